"""
Chat transcript persistence.

Keeps a record of every comparison session on disk so transcripts can be
reviewed after the sandboxes are gone. The agent loop never reads from
here; the conversation history it works with always arrives in the
request body.

Storage layout:
    ~/.spinel/sessions/{session_id}/
        metadata.json     - session info (id, created_at, updated_at)
        messages.jsonl    - one {role, mode, content, blocks, created_at} per line
        uploads.jsonl     - one {filename, original_name, size, path, created_at} per line
        uploads/
            {timestamp}-{filename}  - raw uploaded bytes
"""

import json
import os
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional


# Characters unsafe for filenames on Windows
_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>|\x00]')


def _safe_filename(name: str) -> str:
    """Convert an uploaded file name to a safe on-disk name."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip(". ")
    return cleaned or "upload"


class ChatStore:
    """Manages session directories for chat transcript persistence.

    Writes may arrive from several worker threads at once (both panels of
    a comparison persist concurrently), so every mutation holds one lock.
    """

    def __init__(self, base_dir: Optional[Path] = None):
        if base_dir is None:
            from config import get_data_dir
            base_dir = get_data_dir() / "sessions"
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def session_dir(self, session_id: str) -> Path:
        safe = _safe_filename(session_id)
        if safe != session_id:
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.base_dir / session_id

    def ensure_session(self, session_id: str) -> dict:
        """Create the session record if new, otherwise touch ``updated_at``.

        Returns:
            The session metadata after the upsert.
        """
        session_dir = self.session_dir(session_id)
        now = datetime.now().isoformat()
        with self._lock:
            session_dir.mkdir(parents=True, exist_ok=True)
            metadata = self._read_json(session_dir / "metadata.json")
            if metadata is None:
                metadata = {"id": session_id, "created_at": now}
            metadata["updated_at"] = now
            self._write_json(session_dir / "metadata.json", metadata)
        return metadata

    def append_message(
        self,
        session_id: str,
        role: str,
        mode: str,
        content: str,
        blocks: Optional[list[dict]] = None,
    ) -> dict:
        """Append one message to the session transcript."""
        record = {
            "role": role,
            "mode": mode,
            "content": content,
            "blocks": blocks,
            "created_at": datetime.now().isoformat(),
        }
        session_dir = self.session_dir(session_id)
        with self._lock:
            session_dir.mkdir(parents=True, exist_ok=True)
            self._append_jsonl(session_dir / "messages.jsonl", record)
        return record

    def save_upload(self, session_id: str, filename: str, data: bytes) -> Path:
        """Store an uploaded file's bytes and record its metadata.

        Returns:
            Path of the stored blob.
        """
        session_dir = self.session_dir(session_id)
        stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
        stored_name = f"{stamp}-{_safe_filename(filename)}"
        with self._lock:
            uploads_dir = session_dir / "uploads"
            uploads_dir.mkdir(parents=True, exist_ok=True)
            path = uploads_dir / stored_name
            path.write_bytes(data)
            self._append_jsonl(session_dir / "uploads.jsonl", {
                "filename": stored_name,
                "original_name": filename,
                "size": len(data),
                "path": str(path),
                "created_at": datetime.now().isoformat(),
            })
        return path

    def list_messages(self, session_id: str) -> list[dict]:
        """Return the session transcript in append order.

        Raises:
            FileNotFoundError: If the session does not exist.
        """
        session_dir = self.session_dir(session_id)
        if not session_dir.exists():
            raise FileNotFoundError(f"Session not found: {session_id}")
        return self._read_jsonl(session_dir / "messages.jsonl")

    def list_uploads(self, session_id: str) -> list[dict]:
        return self._read_jsonl(self.session_dir(session_id) / "uploads.jsonl")

    def get_metadata(self, session_id: str) -> Optional[dict]:
        return self._read_json(self.session_dir(session_id) / "metadata.json")

    # ---- Internal helpers ----

    @staticmethod
    def _write_json(path: Path, data) -> None:
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)

    @staticmethod
    def _read_json(path: Path):
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _append_jsonl(path: Path, record: dict) -> None:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    @staticmethod
    def _read_jsonl(path: Path) -> list[dict]:
        if not path.exists():
            return []
        records = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(json.loads(line))
        return records
