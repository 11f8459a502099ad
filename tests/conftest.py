from __future__ import annotations

from dataclasses import dataclass
from email.message import Message
import http.cookiejar
import io
import os
from pathlib import Path
import shutil
import socket
import subprocess
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from uuid import uuid4

from PIL import Image
import pytest
import pytest_asyncio

from config import Settings
from database import Database


def make_image_bytes(width: int, height: int, fmt: str = "PNG") -> bytes:
    """Encode a solid-colour test image of the given size."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (200, 80, 40)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> Database:
    db = Database(tmp_path / "test.db")
    await db.initialize()
    return db


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "test.db",
        upload_dir=tmp_path / "uploads",
        secret_key="test-secret",
    )


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        return None


@dataclass
class TestResponse:
    status: int
    headers: Message
    body: str


def _multipart_body(
    fields: dict[str, str], files: dict[str, tuple[str, bytes, str]]
) -> tuple[bytes, str]:
    boundary = f"----pixboard{uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in fields.items():
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    for name, (filename, content, content_type) in files.items():
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
        )
        chunks.append(content)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


class TestClient:
    __test__ = False

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.cookie_jar = http.cookiejar.CookieJar()
        self.opener = urllib.request.build_opener(
            urllib.request.HTTPCookieProcessor(self.cookie_jar),
            _NoRedirect(),
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        files: dict[str, tuple[str, bytes, str]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> TestResponse:
        url = f"{self.base_url}{path}"
        body = None
        req_headers = headers.copy() if headers else {}
        if files is not None:
            body, content_type = _multipart_body(data or {}, files)
            req_headers["Content-Type"] = content_type
        elif data is not None:
            encoded = urllib.parse.urlencode(data)
            body = encoded.encode("utf-8")
            req_headers.setdefault(
                "Content-Type", "application/x-www-form-urlencoded"
            )
        request = urllib.request.Request(
            url, data=body, headers=req_headers, method=method
        )
        try:
            response = self.opener.open(request, timeout=10)
        except urllib.error.HTTPError as exc:
            response = exc
        content = response.read().decode("utf-8", errors="replace")
        return TestResponse(status=response.code, headers=response.headers, body=content)

    def get_cookie(self, name: str) -> str | None:
        for cookie in self.cookie_jar:
            if cookie.name == name and not cookie.is_expired():
                return cookie.value
        return None


@dataclass
class ServerInfo:
    base_url: str
    db_path: Path
    upload_dir: Path


def _find_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError as exc:
        raise RuntimeError("Socket binding is not permitted in this environment.") from exc


def _wait_for_server(base_url: str, proc: subprocess.Popen[str]) -> None:
    deadline = time.time() + 15
    last_error: Exception | None = None
    while time.time() < deadline:
        if proc.poll() is not None:
            raise RuntimeError("Robyn server process exited early.")
        try:
            with urllib.request.urlopen(f"{base_url}/login", timeout=1) as resp:
                if resp.status == 200:
                    return
        except Exception as exc:  # pragma: no cover - transient startup errors
            last_error = exc
        time.sleep(0.2)
    raise RuntimeError(f"Robyn server failed to start: {last_error}")


def _robyn_command() -> list[str]:
    """Locate the robyn CLI for the interpreter running the tests."""
    beside_python = Path(sys.executable).parent / "robyn"
    if beside_python.exists():
        return [str(beside_python)]
    on_path = shutil.which("robyn")
    if on_path:
        return [on_path]
    return [sys.executable, "-m", "robyn"]


@pytest.fixture(scope="module")
def server(tmp_path_factory: pytest.TempPathFactory) -> ServerInfo:
    pytest.importorskip("robyn")
    repo_root = Path(__file__).resolve().parents[1]
    workdir = tmp_path_factory.mktemp("pixboard")
    db_path = workdir / "pixboard.db"
    upload_dir = workdir / "uploads"
    try:
        port = _find_free_port()
    except RuntimeError as exc:
        pytest.skip(str(exc))
    env = os.environ.copy()
    env.update(
        {
            "ROBYN_HOST": "127.0.0.1",
            "ROBYN_PORT": str(port),
            "PIXBOARD_SECURE_COOKIES": "0",
            "PIXBOARD_DB_PATH": str(db_path),
            "PIXBOARD_UPLOAD_DIR": str(upload_dir),
            "PIXBOARD_SECRET_KEY": "integration-secret",
            "PIXBOARD_LOG_LEVEL": "ERROR",
        }
    )
    proc = subprocess.Popen(
        [*_robyn_command(), "app.py", "--log-level", "ERROR"],
        cwd=repo_root,
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )
    try:
        _wait_for_server(f"http://127.0.0.1:{port}", proc)
        yield ServerInfo(
            base_url=f"http://127.0.0.1:{port}",
            db_path=db_path,
            upload_dir=upload_dir,
        )
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:  # pragma: no cover - safety net
            proc.kill()
