import asyncio
import os
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient

from papercheck.aggregator import degraded_result
from papercheck.api import create_app
from papercheck.ingest import prepare_submission
from papercheck.llm_client import MockOfflineClient
from papercheck.pipeline import AnalysisOutcome
from papercheck.storage import ArtifactStore, parse_artifact_name

PAPER = (
    b"My Paper\n\n"
    b"Abstract\nWe study X.\n\n"
    b"Introduction\nScientific writing matters. We test a checker. It works well.\n"
)
SID = "sub_1700000000000_0a1b2c3d"


def _client(tmp_path) -> TestClient:
    return TestClient(create_app(llm=MockOfflineClient(), store=ArtifactStore(tmp_path)))


def _token(link: str) -> str:
    return parse_qs(urlparse(link).query)["path"][0]


def test_health(tmp_path) -> None:
    with _client(tmp_path) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_analyze_returns_result_and_downloadable_report(tmp_path) -> None:
    with _client(tmp_path) as client:
        response = client.post("/analyze", files={"file": ("paper.txt", PAPER, "text/plain")})
        assert response.status_code == 200
        payload = response.json()
        assert payload["title"] == "My Paper"
        assert payload["statistics"] == {"critical": 0, "major": 0, "minor": 0}
        assert payload["submissionId"].startswith("sub_")
        assert set(payload["reportLinks"]) == {"json", "report"}

        report = client.get("/download", params={"path": _token(payload["reportLinks"]["report"])})
        assert report.status_code == 200
        assert report.headers["content-type"].startswith("text/markdown")
        assert "attachment" in report.headers["content-disposition"]
        assert report.headers["cache-control"].startswith("no-store")
        assert report.text.startswith("# Scientific Paper Structure Assessment")

    names = sorted(path.name.split("-", 1)[0] for path in tmp_path.iterdir())
    assert names == ["report", "results", "upload"]


def test_analyze_prefers_client_extracted_text(tmp_path) -> None:
    with _client(tmp_path) as client:
        response = client.post(
            "/analyze",
            files={"file": ("paper.docx", b"not really a docx", "application/octet-stream")},
            data={"fileText": PAPER.decode("utf-8")},
        )
    assert response.status_code == 200
    assert response.json()["title"] == "My Paper"


def test_analyze_rejects_unsupported_extension(tmp_path) -> None:
    with _client(tmp_path) as client:
        response = client.post("/analyze", files={"file": ("tool.exe", b"MZ", "application/octet-stream")})
    assert response.status_code == 400
    assert "Unsupported file extension" in response.json()["error"]


def test_analyze_rejects_missing_file(tmp_path) -> None:
    with _client(tmp_path) as client:
        response = client.post("/analyze", data={"fileText": "text"})
    assert response.status_code == 400
    assert response.json()["error"] == "No valid file provided."


def test_analyze_rejects_oversized_upload(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr("papercheck.security.MAX_UPLOAD_MB", 0)
    with _client(tmp_path) as client:
        response = client.post("/analyze", files={"file": ("paper.txt", PAPER, "text/plain")})
    assert response.status_code == 413


def test_analyze_timeout_returns_504_with_degraded_result(tmp_path, monkeypatch) -> None:
    async def timed_out(text, llm=None, catalog=None, timeout_s=None):
        del text, llm, catalog, timeout_s
        return AnalysisOutcome(
            result=degraded_result("Analysis timed out after 180 seconds.", title="My Paper"),
            timed_out=True,
        )

    monkeypatch.setattr("papercheck.api.analyze_text", timed_out)
    with _client(tmp_path) as client:
        response = client.post("/analyze", files={"file": ("paper.txt", PAPER, "text/plain")})
    assert response.status_code == 504
    payload = response.json()
    assert payload["error"] == "Analysis timed out after 180 seconds."
    assert payload["analysisError"] == payload["error"]
    assert payload["title"] == "My Paper"
    assert payload["sections"] == []


def test_analyze_unexpected_failure_returns_500(tmp_path, monkeypatch) -> None:
    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("papercheck.api.analyze_text", broken)
    with _client(tmp_path) as client:
        response = client.post("/analyze", files={"file": ("paper.txt", PAPER, "text/plain")})
    assert response.status_code == 500
    assert "boom" in response.json()["error"]


def test_analyze_failure_still_schedules_upload_purge(tmp_path, monkeypatch) -> None:
    async def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr("papercheck.api.analyze_text", broken)
    store = ArtifactStore(tmp_path)
    with TestClient(create_app(llm=MockOfflineClient(), store=store)) as client:
        response = client.post("/analyze", files={"file": ("paper.txt", PAPER, "text/plain")})
    assert response.status_code == 500
    staged = [parse_artifact_name(path.name) for path in tmp_path.iterdir()]
    assert [entry[0] for entry in staged] == ["upload"]
    assert list(store.purge_schedule) == [staged[0][1]]


def test_analyze_prepares_text_off_the_event_loop(tmp_path, monkeypatch) -> None:
    seen: list[bool] = []

    def recording_prepare(filename, raw, file_text):
        try:
            asyncio.get_running_loop()
            seen.append(False)
        except RuntimeError:
            seen.append(True)
        return prepare_submission(filename, raw, file_text)

    monkeypatch.setattr("papercheck.api.prepare_submission", recording_prepare)
    with _client(tmp_path) as client:
        response = client.post("/analyze", files={"file": ("paper.txt", PAPER, "text/plain")})
    assert response.status_code == 200
    assert seen == [True]


def test_upload_stages_file(tmp_path) -> None:
    with _client(tmp_path) as client:
        response = client.post("/upload", files={"file": ("paper.md", b"# Title", "text/markdown")})
    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["file"]["name"] == "paper.md"
    assert payload["file"]["size"] == 7
    assert payload["file"]["path"] == f"upload-{payload['submissionId']}.md"
    assert (tmp_path / payload["file"]["path"]).read_bytes() == b"# Title"


def test_download_rejects_traversal_and_unknown_artifacts(tmp_path) -> None:
    root = tmp_path / "artifacts"
    root.mkdir()
    outside = tmp_path / "secret.txt"
    outside.write_text("secret", encoding="utf-8")
    os.symlink(outside, root / f"report-{SID}.md")

    client = TestClient(create_app(llm=MockOfflineClient(), store=ArtifactStore(root)))
    with client:
        assert client.get("/download", params={"path": "../secret.txt"}).status_code == 400
        assert client.get("/download", params={"path": "/etc/passwd"}).status_code == 400
        assert client.get("/download").status_code == 400
        assert client.get("/download", params={"path": f"report-{SID}.md"}).status_code == 403
        missing = client.get("/download", params={"path": f"results-{SID}.json"})
        assert missing.status_code == 404
        assert missing.json() == {"error": "Artifact not found."}


def test_options_preflight_returns_cors_headers(tmp_path) -> None:
    with _client(tmp_path) as client:
        for path in ["/analyze", "/upload", "/download", "/health"]:
            response = client.options(path)
            assert response.status_code == 200
            assert response.headers["access-control-allow-origin"] == "*"
            assert "POST" in response.headers["access-control-allow-methods"]
