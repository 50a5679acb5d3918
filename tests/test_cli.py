"""Tests for the ballotbox-admin command line."""

import json

import httpx
import pytest

from ballotbox.cli import build_parser, main


def mock_client(handler) -> httpx.Client:
    return httpx.Client(base_url="http://api.test/api/v1", transport=httpx.MockTransport(handler))


def test_issue_credentials_prints_codes(capsys):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        count = json.loads(request.content)["count"]
        return httpx.Response(201, json={
            "event_id": "event-1",
            "count": count,
            "codes": [f"CODE{i:04d}" for i in range(count)],
        })

    exit_code = main(["issue-credentials", "--event", "event-1", "--count", "3"], client=mock_client(handler))

    assert exit_code == 0
    assert requests[0].url.path == "/api/v1/events/event-1/credentials"
    assert capsys.readouterr().out.split() == ["CODE0000", "CODE0001", "CODE0002"]


def test_large_requests_are_split_into_batches(tmp_path):
    counts = []

    def handler(request: httpx.Request) -> httpx.Response:
        count = json.loads(request.content)["count"]
        counts.append(count)
        offset = sum(counts[:-1])
        return httpx.Response(201, json={
            "event_id": "event-1",
            "count": count,
            "codes": [f"C{offset + i:07d}" for i in range(count)],
        })

    output = tmp_path / "codes" / "event-1.json"
    exit_code = main(
        ["issue-credentials", "--event", "event-1", "--count", "2500", "--output", str(output)],
        client=mock_client(handler)
    )

    assert exit_code == 0
    assert counts == [1000, 1000, 500]
    saved = json.loads(output.read_text())
    assert saved["count"] == 2500
    assert len(set(saved["codes"])) == 2500


def test_set_status(capsys):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PUT"
        assert json.loads(request.content) == {"status": "active"}
        return httpx.Response(200, json={"id": "event-1", "name": "Best Poster", "status": "active"})

    exit_code = main(["set-status", "--event", "event-1", "--status", "active"], client=mock_client(handler))

    assert exit_code == 0
    assert "is now active" in capsys.readouterr().out


def test_api_error_is_reported(capsys):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"error": "invalid_transition", "detail": "Event cannot move from ended to active"})

    exit_code = main(["set-status", "--event", "event-1", "--status", "active"], client=mock_client(handler))

    assert exit_code == 1
    assert "HTTP 409" in capsys.readouterr().err


def test_draft_is_not_a_valid_target():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["set-status", "--event", "event-1", "--status", "draft"])


def test_count_must_be_positive():
    with pytest.raises(SystemExit):
        main(["issue-credentials", "--event", "event-1", "--count", "0"], client=mock_client(lambda r: None))
