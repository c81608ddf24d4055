#!/usr/bin/env python3
"""Spinel Compare: side-by-side terminal client.

Sends each query to the FastAPI backend once per mode (vanilla and
spinel) in parallel and prints both transcripts. If the server isn't
running, it is started automatically as a background process.

Usage:
    python main.py                                   # Interactive mode
    python main.py "Compute the band gap of Si"      # Single-query mode
    python main.py --file data.csv "Plot column 2"   # Upload files with the query
    python main.py --session ID                      # Reuse a session's sandboxes
    python main.py --mode spinel                     # Only run one panel
    python main.py --url http://host:9000            # Custom server URL

Commands in interactive mode:
    /quit      - Release the session's sandboxes and exit
    /reset     - Release sandboxes and start a new session
    /history   - Show the persisted transcript of this session
"""

import argparse
import base64
import json
import os
import socket
import subprocess
import sys
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from urllib.parse import urlparse

import requests

MODES = ("vanilla", "spinel")

# ---- ANSI colors ----

_USE_COLOR = True


def _c(code: str, text: str) -> str:
    if not _USE_COLOR:
        return text
    return f"\033[{code}m{text}\033[0m"


def dim(text: str) -> str:
    return _c("2", text)


def cyan(text: str) -> str:
    return _c("36", text)


def green(text: str) -> str:
    return _c("32", text)


def yellow(text: str) -> str:
    return _c("33", text)


def red(text: str) -> str:
    return _c("31", text)


def bold(text: str) -> str:
    return _c("1", text)


# ---- Server auto-start ----

def _is_port_open(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(1)
        return s.connect_ex((host, port)) == 0


def _wait_for_port(host: str, port: int, timeout: float = 30.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if _is_port_open(host, port):
            return True
        time.sleep(0.25)
    return False


def ensure_server(url: str) -> bool:
    """If the server isn't running, start it as a detached background process.

    The server survives after the CLI exits (shared resource).
    Returns True if server is available.
    """
    parsed = urlparse(url)
    host = parsed.hostname or "localhost"
    port = parsed.port or 8000

    if _is_port_open(host, port):
        return True

    server_script = str(Path(__file__).resolve().parent / "api_server.py")
    if not Path(server_script).exists():
        print(red(f"Server script not found: {server_script}"))
        return False

    from config import get_data_dir
    log_path = os.path.join(str(get_data_dir()), "logs", "api_server.log")
    os.makedirs(os.path.dirname(log_path), exist_ok=True)

    print(f"Server not running. Starting on port {port}...")
    log_file = open(log_path, "a")

    popen_kwargs = {
        "stdout": log_file,
        "stderr": log_file,
    }
    # Detach from CLI's process group so Ctrl+C doesn't kill the server
    if sys.platform == "win32":
        popen_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        popen_kwargs["start_new_session"] = True

    proc = subprocess.Popen(
        [sys.executable, server_script, "--port", str(port), "--host", host],
        **popen_kwargs,
    )
    print(dim(f"  PID {proc.pid} (log: {log_path})"))

    if not _wait_for_port(host, port, timeout=30.0):
        if proc.poll() is not None:
            print(red(f"  Server exited with code {proc.returncode}. Check {log_path}"))
        else:
            print(red(f"  Timed out after 30s. Check {log_path}"))
        return False

    print("  Server ready.")
    return True


# ---- SSE parsing ----

def iter_sse_events(lines):
    """Parse SSE events from an iterable of decoded lines.

    Accepts ``response.iter_lines(decode_unicode=True)`` or any list of
    strings. Yields ``(event_type, data_dict)`` tuples.
    """
    event_type = "message"
    data_lines = []

    for line in lines:
        if line is None:
            continue

        if line == "":
            # Empty line = end of event
            if data_lines:
                raw = "\n".join(data_lines)
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    data = {"raw": raw}
                yield event_type, data
            event_type = "message"
            data_lines = []
            continue

        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())
        # Ignore comments (lines starting with ':') and other fields

    if data_lines:
        raw = "\n".join(data_lines)
        try:
            yield event_type, json.loads(raw)
        except json.JSONDecodeError:
            yield event_type, {"raw": raw}


# ---- API helpers ----

class APIClient:
    def __init__(self, base_url: str, session_id: str | None = None):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id or uuid.uuid4().hex

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    def check_server(self) -> dict:
        resp = requests.get(self._url("/status"), timeout=5)
        resp.raise_for_status()
        return resp.json()

    def release_session(self) -> bool:
        try:
            resp = requests.delete(self._url(f"/sessions/{self.session_id}"), timeout=30)
        except requests.RequestException:
            return False
        return resp.status_code == 204

    def get_messages(self) -> list:
        resp = requests.get(self._url(f"/sessions/{self.session_id}/messages"), timeout=10)
        resp.raise_for_status()
        return resp.json()

    def chat_stream(self, messages: list[dict], mode: str, files: list[dict] | None = None):
        """POST one panel's request and yield its event dicts.

        Reading stops at ``done`` or when the server closes the stream. An
        ``error`` frame from a failed execution is followed by more events;
        only an ``error`` that is the last frame ends the panel.
        """
        body = {"messages": messages, "mode": mode, "sessionId": self.session_id}
        if files:
            body["files"] = files
        resp = requests.post(self._url("/chat"), json=body, stream=True, timeout=600)
        try:
            if resp.status_code != 200:
                try:
                    detail = resp.json().get("detail", resp.text)
                except ValueError:
                    detail = resp.text
                yield {"type": "error", "content": f"HTTP {resp.status_code}: {detail}"}
                return
            for _, data in iter_sse_events(resp.iter_lines(decode_unicode=True)):
                yield data
                if data.get("type") == "done":
                    return
        finally:
            resp.close()


def encode_files(paths: list[str]) -> list[dict]:
    files = []
    for p in paths:
        path = Path(p)
        files.append({
            "name": path.name,
            "content": base64.b64encode(path.read_bytes()).decode("ascii"),
        })
    return files


# ---- Panels ----

class PanelResult:
    """Collected events of one mode's run."""

    def __init__(self, mode: str):
        self.mode = mode
        self.events: list[dict] = []
        self.elapsed = 0.0

    @property
    def text(self) -> str:
        return "\n".join(e.get("content", "") for e in self.events if e.get("type") == "text")

    @property
    def failed(self) -> bool:
        return bool(self.events) and self.events[-1].get("type") == "error"


def run_panel(client: APIClient, history: list[dict], mode: str, files: list[dict] | None) -> PanelResult:
    result = PanelResult(mode)
    start = time.monotonic()
    try:
        for event in client.chat_stream(history, mode, files):
            result.events.append(event)
    except requests.RequestException as e:
        result.events.append({"type": "error", "content": str(e)})
    result.elapsed = time.monotonic() - start
    return result


def render_panel(result: PanelResult) -> str:
    """Format one panel's transcript for the terminal."""
    lines = [bold(f"=== {result.mode} ===") + dim(f"  ({result.elapsed:.1f}s)")]
    images = 0
    for event in result.events:
        etype = event.get("type")
        content = event.get("content", "")
        if etype == "text":
            lines.append(content)
        elif etype == "code":
            lines.append(cyan("```python"))
            lines.append(cyan(content))
            lines.append(cyan("```"))
        elif etype == "output":
            lines.append(dim(content))
        elif etype == "error":
            lines.append(red(f"Error: {content}"))
        elif etype == "image":
            images += 1
            lines.append(yellow(f"[plot {images}]"))
        elif etype == "cap_reached":
            lines.append(yellow(f"[stopped after {content} iterations]"))
        elif etype == "done":
            lines.append(green("[done]"))
    return "\n".join(lines)


def compare(
    client: APIClient,
    histories: dict[str, list[dict]],
    query: str,
    modes: tuple[str, ...],
    files: list[dict] | None = None,
) -> dict[str, PanelResult]:
    """Run every mode in parallel for *query* and extend each history."""
    for mode in modes:
        histories[mode].append({"role": "user", "content": query})

    with ThreadPoolExecutor(max_workers=len(modes)) as pool:
        futures = {
            mode: pool.submit(run_panel, client, list(histories[mode]), mode, files)
            for mode in modes
        }
        results = {mode: f.result() for mode, f in futures.items()}

    for mode, result in results.items():
        if result.failed:
            # Drop the unanswered user turn so the next query stays well-formed
            histories[mode].pop()
        else:
            histories[mode].append({"role": "assistant", "content": result.text or "(no text)"})
    return results


def main():
    global _USE_COLOR

    parser = argparse.ArgumentParser(
        description="Side-by-side vanilla/spinel comparison client"
    )
    parser.add_argument(
        "query", nargs="?", default=None,
        help="Single query to run (non-interactive mode)",
    )
    parser.add_argument(
        "--url", default="http://localhost:8000",
        help="API server URL (default: http://localhost:8000)",
    )
    parser.add_argument("--session", "-s", default=None, help="Session ID to reuse")
    parser.add_argument(
        "--file", "-f", action="append", default=[],
        help="File to upload with the first query (repeatable)",
    )
    parser.add_argument(
        "--mode", choices=MODES, default=None,
        help="Run only one mode instead of both",
    )
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI color output")
    args = parser.parse_args()

    if args.no_color:
        _USE_COLOR = False

    modes = (args.mode,) if args.mode else MODES
    client = APIClient(args.url, args.session)

    try:
        client.check_server()
    except requests.ConnectionError:
        if not ensure_server(args.url):
            print(red("Could not start the server. Exiting."))
            sys.exit(1)
    except requests.RequestException as e:
        print(red(f"Server error: {e}"))
        sys.exit(1)

    files = encode_files(args.file) if args.file else None
    histories = {mode: [] for mode in modes}

    if args.query:
        results = compare(client, histories, args.query, modes, files)
        for mode in modes:
            print(render_panel(results[mode]))
            print()
        client.release_session()
        sys.exit(1 if any(r.failed for r in results.values()) else 0)

    print(f"Session {bold(client.session_id)} -- type /quit to exit")
    while True:
        try:
            query = input(bold("> ")).strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if not query:
            continue
        if query == "/quit":
            break
        if query == "/reset":
            client.release_session()
            client = APIClient(args.url)
            histories = {mode: [] for mode in modes}
            print(dim(f"New session {client.session_id}"))
            continue
        if query == "/history":
            try:
                for m in client.get_messages():
                    print(dim(f"[{m['mode']}] {m['role']}: ") + (m.get("content") or ""))
            except requests.HTTPError:
                print(dim("Nothing persisted yet."))
            continue

        results = compare(client, histories, query, modes, files)
        files = None
        for mode in modes:
            print(render_panel(results[mode]))
            print()

    if client.release_session():
        print(dim("Released sandboxes."))


if __name__ == "__main__":
    main()
