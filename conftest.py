import os
import tempfile

import httpx
import pytest

# Point module-level defaults at a scratch area before config/api are imported
_scratch = tempfile.mkdtemp(prefix="reading_library_")
os.environ.setdefault("LIBRARY_DB_FILE", os.path.join(_scratch, "library.db"))
os.environ.setdefault("UPLOADS_DIR", os.path.join(_scratch, "uploads"))
os.environ.setdefault("FRONTEND_DIR", os.path.join(_scratch, "dist"))

from covers import CoverLocalizer  # noqa: E402
from library import Library  # noqa: E402


class FakeImageHost:
    """Routes for an ``httpx.MockTransport``: url -> (status, headers, body). Records every request."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, headers, body = self.routes.get(str(request.url), (404, {}, b""))
        return httpx.Response(status, headers=headers, content=body)


@pytest.fixture
def image_host():
    return FakeImageHost()


@pytest.fixture
def uploads_dir(tmp_path):
    return str(tmp_path / "uploads")


@pytest.fixture
def localizer(image_host, uploads_dir):
    client = httpx.Client(transport=httpx.MockTransport(image_host))
    loc = CoverLocalizer(uploads_dir=uploads_dir, client=client)
    yield loc
    client.close()


@pytest.fixture
def lib(tmp_path, request, localizer):
    # A fresh database file per test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, cover_localizer=localizer, seed=False)
    yield lib
    lib.close()
