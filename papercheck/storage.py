"""Ephemeral, TTL-bound artifact store with path-traversal-safe retrieval."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from collections.abc import Callable
from pathlib import Path

import aiofiles

log = logging.getLogger(__name__)

ARTIFACT_KINDS = ("upload", "results", "report")
SUBMISSION_ID_PATTERN = re.compile(r"sub_[0-9]+_[0-9a-f]+")
_ARTIFACT_NAME = re.compile(
    r"(?P<kind>upload|results|report)-(?P<submission_id>sub_[0-9]+_[0-9a-f]+)"
    r"\.(?P<ext>[A-Za-z0-9]{1,8})"
)


class ArtifactError(Exception):
    status_code = 400


class InvalidArtifactToken(ArtifactError):
    status_code = 400


class ArtifactAccessDenied(ArtifactError):
    status_code = 403


class ArtifactNotFound(ArtifactError):
    status_code = 404


def new_submission_id(clock: Callable[[], float] = time.time) -> str:
    return f"sub_{int(clock() * 1000)}_{secrets.token_hex(4)}"


def parse_artifact_name(name: str) -> tuple[str, str, str] | None:
    """Splits "{kind}-{submission_id}.{ext}" or returns None."""
    match = _ARTIFACT_NAME.fullmatch(name)
    if not match:
        return None
    return match.group("kind"), match.group("submission_id"), match.group("ext")


class ArtifactStore:
    """
    Files live flat under one root, named "{kind}-{submission_id}.{ext}".

    Nothing here is durable: every submission is scheduled for purge ``ttl_s``
    seconds after it is written. The clock is injectable so purge timing can
    be tested without sleeping.
    """

    def __init__(
        self,
        root: Path | str,
        ttl_s: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_s is None:
            from papercheck.config import ARTIFACT_TTL_S

            ttl_s = ARTIFACT_TTL_S
        self.root = Path(root).expanduser().resolve()
        self.ttl_s = ttl_s
        self.clock = clock
        self.purge_schedule: dict[str, float] = {}

    def artifact_name(self, kind: str, submission_id: str, ext: str) -> str:
        if kind not in ARTIFACT_KINDS:
            raise ValueError(f"Unknown artifact kind: {kind!r}")
        if not SUBMISSION_ID_PATTERN.fullmatch(submission_id):
            raise ValueError(f"Invalid submission id: {submission_id!r}")
        name = f"{kind}-{submission_id}.{ext.lstrip('.').lower()}"
        if parse_artifact_name(name) is None:
            raise ValueError(f"Invalid artifact extension: {ext!r}")
        return name

    async def save(self, kind: str, submission_id: str, data: bytes | str, ext: str) -> Path:
        path = self.root / self.artifact_name(kind, submission_id, ext)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        self.root.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(payload)
        log.info("Saved artifact %s (%d bytes)", path.name, len(payload))
        return path

    def _inside_root(self, path: Path) -> Path:
        resolved = path.resolve()
        if resolved.parent != self.root:
            raise ArtifactAccessDenied("Access to the requested artifact is denied.")
        return resolved

    def resolve_token(self, token: str | None) -> Path:
        token = (token or "").strip()
        if not token:
            raise InvalidArtifactToken("Missing artifact path.")
        if "/" in token or "\\" in token or token.startswith("."):
            raise InvalidArtifactToken("Invalid artifact path.")
        if parse_artifact_name(token) is None:
            raise InvalidArtifactToken("Invalid artifact path.")
        path = self._inside_root(self.root / token)
        if not path.is_file():
            raise ArtifactNotFound("Artifact not found.")
        return path

    async def read(self, path_or_token: Path | str) -> bytes:
        if isinstance(path_or_token, Path):
            path = self._inside_root(path_or_token)
            if not path.is_file():
                raise ArtifactNotFound("Artifact not found.")
        else:
            path = self.resolve_token(path_or_token)
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    def purge(self, submission_id: str) -> int:
        """Deletes every artifact of exactly this submission; returns the count."""
        self.purge_schedule.pop(submission_id, None)
        if not self.root.is_dir():
            return 0
        removed = 0
        for path in self.root.iterdir():
            parsed = parse_artifact_name(path.name)
            if parsed is None or parsed[1] != submission_id:
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as exc:
                log.warning("Could not delete artifact %s: %s", path.name, exc)
        log.info("Purged %d artifacts for %s", removed, submission_id)
        return removed

    def schedule_purge(self, submission_id: str) -> float:
        due = self.clock() + self.ttl_s
        self.purge_schedule[submission_id] = due
        return due

    def purge_expired(self, now: float | None = None) -> list[str]:
        now = self.clock() if now is None else now
        due = [sid for sid, at in self.purge_schedule.items() if at <= now]
        for submission_id in due:
            self.purge(submission_id)
        return due

    def purge_stale_files(self, now: float | None = None) -> int:
        """Removes artifacts left behind by an earlier process, judged by mtime."""
        now = self.clock() if now is None else now
        if not self.root.is_dir():
            return 0
        stale: set[str] = set()
        for path in self.root.iterdir():
            parsed = parse_artifact_name(path.name)
            if parsed is None or parsed[1] in self.purge_schedule:
                continue
            try:
                if path.stat().st_mtime + self.ttl_s <= now:
                    stale.add(parsed[1])
            except OSError as exc:
                log.warning("Could not stat artifact %s: %s", path.name, exc)
        return sum(self.purge(submission_id) for submission_id in sorted(stale))

    async def purge_later(self, submission_id: str) -> None:
        due = self.purge_schedule.get(submission_id)
        if due is None:
            due = self.schedule_purge(submission_id)
        await asyncio.sleep(max(0.0, due - self.clock()))
        if self.purge_schedule.get(submission_id, due) <= self.clock():
            self.purge(submission_id)
