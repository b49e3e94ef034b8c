import io
import json

import pytest

from andrena import cli
from andrena.core.errors import ModelLoadError, PipelineStage, PipelineTimeout
from andrena.models import InferenceEngine
from andrena.services.audio import MediaRequest


def _lines(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines()]


@pytest.mark.asyncio
async def test_analyze_requests_prints_results_in_input_order(coordinator):
    out = io.StringIO()
    requests = [
        MediaRequest("https://media.test/speech"),
        MediaRequest("https://media.test/missing"),
        MediaRequest("https://media.test/short"),
    ]

    exit_code = await cli.analyze_requests(requests, coordinator, out=out)

    records = _lines(out)
    assert [record["url"] for record in records] == [request.url for request in requests]
    assert records[0]["ok"] is True
    assert records[0]["result"]["window_count"] == 3
    assert records[1]["error"] == {
        "stage": "fetch",
        "kind": "NotFound",
        "detail": records[1]["error"]["detail"],
    }
    assert records[2]["error"]["kind"] == "EmptyMedia"
    # first failure in input order decides the exit code
    assert exit_code == 3


@pytest.mark.asyncio
async def test_analyze_requests_succeeds_with_zero_exit(coordinator):
    out = io.StringIO()

    exit_code = await cli.analyze_requests([MediaRequest("https://media.test/ok")], coordinator, out=out)

    assert exit_code == 0
    assert _lines(out)[0]["result"]["source"]["title"] == "Fixture ok"


@pytest.mark.asyncio
async def test_analyze_requests_reports_timeouts(coordinator):
    out = io.StringIO()

    exit_code = await cli.analyze_requests(
        [MediaRequest("https://media.test/hang")], coordinator, deadline_seconds=0.2, out=out
    )

    assert exit_code == 6
    assert _lines(out)[0]["error"]["kind"] == "PipelineTimeout"


def test_main_rejects_invalid_locator(settings, monkeypatch):
    monkeypatch.setattr(cli, "get_settings", lambda: settings)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["analyze", "ftp://media.test/file"])

    assert excinfo.value.code == 2


def test_main_exits_when_downloader_missing(settings, monkeypatch, tmp_path):
    missing = settings.model_copy(update={"downloader_path": str(tmp_path / "absent")})
    monkeypatch.setattr(cli, "get_settings", lambda: missing)

    assert cli.main(["analyze", "https://media.test/ok"]) == 3


def test_main_exits_when_model_load_fails(settings, monkeypatch, fake_downloader):
    configured = settings.model_copy(update={"downloader_path": str(fake_downloader.path)})
    monkeypatch.setattr(cli, "get_settings", lambda: configured)

    def failing_load(self):
        raise ModelLoadError("weights missing")

    monkeypatch.setattr(InferenceEngine, "load", failing_load)

    assert cli.main(["analyze", "https://media.test/ok"]) == 7


def test_main_runs_full_pipeline(settings, engine, monkeypatch, fake_downloader, capsys):
    configured = settings.model_copy(update={"downloader_path": str(fake_downloader.path)})
    monkeypatch.setattr(cli, "get_settings", lambda: configured)
    monkeypatch.setattr(cli, "InferenceEngine", lambda _settings: engine)

    exit_code = cli.main(["analyze", "https://media.test/ok", "https://media.test/speech"])

    assert exit_code == 0
    records = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [record["result"]["source"]["source_id"] for record in records] == ["ok", "speech"]
    assert not engine.is_loaded


@pytest.mark.asyncio
async def test_unexpected_fetch_error_keeps_other_records(coordinator, fixture_fetcher, monkeypatch):
    original = fixture_fetcher.fetch

    async def guarded_fetch(request):
        if request.url.endswith("/denied"):
            raise PermissionError("scratch directory is read-only")
        return await original(request)

    monkeypatch.setattr(fixture_fetcher, "fetch", guarded_fetch)
    out = io.StringIO()

    exit_code = await cli.analyze_requests(
        [MediaRequest("https://media.test/denied"), MediaRequest("https://media.test/ok")], coordinator, out=out
    )

    denied, ok = _lines(out)
    assert denied["error"]["stage"] == "fetch"
    assert denied["error"]["kind"] == "NetworkFailure"
    assert ok["ok"] is True
    assert exit_code == 3


@pytest.mark.asyncio
async def test_errors_outside_the_pipeline_are_reported_per_url():
    class BrokenCoordinator:
        async def process(self, request, deadline_seconds=None):
            if request.url.endswith("/broken"):
                raise RuntimeError("coordinator bug")
            raise PipelineTimeout(PipelineStage.FETCH, 1.0)

    out = io.StringIO()

    exit_code = await cli.analyze_requests(
        [MediaRequest("https://media.test/broken"), MediaRequest("https://media.test/slow")],
        BrokenCoordinator(),
        out=out,
    )

    broken, slow = _lines(out)
    assert broken["error"] == {"stage": None, "kind": "RuntimeError", "detail": "coordinator bug"}
    assert slow["error"]["kind"] == "PipelineTimeout"
    assert exit_code == 1


@pytest.mark.parametrize("deadline", ["0", "-1", "nan", "soon"])
def test_main_rejects_invalid_deadlines(settings, monkeypatch, deadline):
    monkeypatch.setattr(cli, "get_settings", lambda: settings)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["analyze", "--deadline", deadline, "https://media.test/ok"])

    assert excinfo.value.code == 2
