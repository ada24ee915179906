"""CLI entrypoint: analyze a manuscript locally or serve the HTTP API."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path

from papercheck.config import HOST, PORT, TEMP_DIR, bootstrap_runtime_dirs, configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="papercheck",
        description="Check the structure of a scientific manuscript against writing rules.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    analyze = commands.add_parser("analyze", help="Analyze one manuscript file.")
    analyze.add_argument("file", help="Manuscript path (docx/txt/md/tex/pdf).")
    analyze.add_argument(
        "--output",
        default=None,
        help="Directory for results-*.json and report-*.md (default: TEMP_FILE_PATH).",
    )
    analyze.add_argument(
        "--offline",
        action="store_true",
        help="Run deterministic offline mode (no API keys or external model calls).",
    )

    serve = commands.add_parser("serve", help="Start the HTTP API.")
    serve.add_argument("--host", default=HOST)
    serve.add_argument("--port", type=int, default=PORT)
    return parser


async def _analyze(path: str, output_dir: Path) -> dict:
    from papercheck.ingest import load_document
    from papercheck.pipeline import analyze_text, persist_artifacts
    from papercheck.storage import ArtifactStore, new_submission_id

    text = load_document(path)
    outcome = await analyze_text(text)
    store = ArtifactStore(output_dir)
    submission_id = new_submission_id()
    saved = await persist_artifacts(store, submission_id, outcome.result)

    payload = outcome.result.to_payload()
    payload["submissionId"] = submission_id
    payload["reportLinks"] = {key: str(saved_path) for key, saved_path in saved.items()}
    return payload


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "serve":
        import uvicorn

        uvicorn.run("papercheck.api:app", host=args.host, port=args.port, access_log=False)
        return

    bootstrap_runtime_dirs()
    if args.offline:
        os.environ["OFFLINE_MODE"] = "1"
        os.environ["LLM_PROVIDER"] = "mock"
    output_dir = Path(args.output).expanduser() if args.output else TEMP_DIR
    payload = asyncio.run(_analyze(args.file, output_dir))
    print(json.dumps(payload, indent=2, ensure_ascii=True))


if __name__ == "__main__":
    main()
