"""Tests for the page rendering client."""

import asyncio

import pytest
import requests

from pdfdeck.renderer import PageRenderingClient, RendererError, backoff_delay

from fakes import FakeResponse, FakeSession

SOURCE = "s3://uploads/uploads/upl_1/source.pdf"


def make_client(outcomes, **kwargs):
    session = FakeSession(outcomes)
    sleeps: list[float] = []
    client = PageRenderingClient(
        "http://renderer.local/",
        session=session,
        sleep=sleeps.append,
        **kwargs,
    )
    return client, session, sleeps


def render(client, max_pages=150):
    return asyncio.run(client.render(SOURCE, 180, max_pages, "job_1"))


def pages_body(*indexes):
    return {
        "pages": [
            {"index": i, "objectPath": f"renders/job_1/page-{i}.png", "widthPx": 800}
            for i in indexes
        ]
    }


def test_backoff_doubles_up_to_cap():
    assert backoff_delay(1) == 0.2
    assert backoff_delay(2) == 0.4
    assert backoff_delay(3) == 0.8
    assert backoff_delay(10) == 2.0


def test_pages_sorted_and_deduplicated():
    body = pages_body(3, 1, 2)
    body["pages"].append({"index": 2, "objectPath": "renders/job_1/dup.png"})
    client, session, _ = make_client([FakeResponse(200, body)])

    pages = render(client)

    assert [p.index for p in pages] == [1, 2, 3]
    assert pages[1].image_object_path == "renders/job_1/page-2.png"
    assert pages[0].width_px == 800
    call = session.calls[0]
    assert call["url"] == "http://renderer.local/render"
    assert call["json"] == {
        "sourceUri": SOURCE,
        "dpi": 180,
        "maxPages": 150,
        "jobId": "job_1",
    }


def test_pages_capped_at_max_pages():
    client, _, _ = make_client([FakeResponse(200, pages_body(1, 2, 3, 4))])
    assert [p.index for p in render(client, max_pages=2)] == [1, 2]


def test_transport_errors_retried_with_backoff():
    client, session, sleeps = make_client([
        requests.ConnectionError("refused"),
        requests.Timeout("slow"),
        FakeResponse(200, pages_body(1)),
    ])

    assert len(render(client)) == 1
    assert len(session.calls) == 3
    assert sleeps == [0.2, 0.4]


def test_gives_up_after_max_attempts():
    client, session, _ = make_client(
        [requests.ConnectionError("refused")] * 3, max_attempts=3)

    with pytest.raises(RendererError) as exc:
        render(client)
    assert exc.value.code == "RENDERER_ERROR"
    assert len(session.calls) == 3


def test_http_error_surfaced_without_retry():
    client, session, _ = make_client([FakeResponse(502, text="bad gateway")])

    with pytest.raises(RendererError) as exc:
        render(client)
    assert exc.value.message == "Renderer error 502: bad gateway"
    assert exc.value.status == 502
    assert len(session.calls) == 1


def test_malformed_response():
    client, _, _ = make_client([FakeResponse(200, {"pages": [{"objectPath": "x.png"}]})])
    with pytest.raises(RendererError):
        render(client)


def test_non_json_response():
    client, _, _ = make_client([FakeResponse(200, None, text="<html>")])
    with pytest.raises(RendererError):
        render(client)


def test_disabled_without_url():
    client = PageRenderingClient(None, session=FakeSession([]))
    assert not client.enabled
    assert render(client) == []
