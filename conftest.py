"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any package import, so the
cached settings and the SQLAlchemy engine pick them up.
"""

import os
import tempfile

_TEST_DB = os.path.join(tempfile.gettempdir(), f"chat_import_test_{os.getpid()}.db")

os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DB}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("INGEST_SECRET", "test-ingest-secret")
os.environ.setdefault("EXPORT_TIMEZONE", "UTC")
os.environ.setdefault("IMPORT_BATCH_DELAY_SECONDS", "0")
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_SERVICE_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""

import pytest  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from chat_import.config import get_settings  # noqa: E402
get_settings.cache_clear()

from chat_import.storage import Base, engine  # noqa: E402
from chat_import import models  # noqa: E402,F401


@pytest.fixture
def db_session():
    """Fresh tables and a session for storage-level tests."""
    from chat_import.storage import SessionLocal

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


# =============================================================================
# Fakes for external collaborators
# =============================================================================

import io  # noqa: E402
import threading  # noqa: E402
import time  # noqa: E402
import zipfile  # noqa: E402

from chat_import.embeddings import EmbeddingError  # noqa: E402
from chat_import.uploads import StorageError  # noqa: E402


class FakeObjectStore:
    """In-memory object store that records puts and in-flight concurrency."""

    def __init__(self, fail_names=(), fail_all=False, delay=0.0):
        self.fail_names = set(fail_names)
        self.fail_all = fail_all
        self.delay = delay
        self.objects = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def put(self, path, data, content_type):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            name = path.rsplit("/", 1)[-1]
            if self.fail_all or name in self.fail_names:
                raise StorageError(f"Bucket not found for {name}")
            self.objects[path] = (data, content_type)
            return self.get_public_url(path)
        finally:
            with self._lock:
                self.in_flight -= 1

    def get_public_url(self, path):
        return f"https://storage.test/whatsapp-media/{path}"


class FakeEmbeddingService:
    """Returns a deterministic 2-d vector per text; can be told to fail."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def embed_batch(self, texts):
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("embedding service unavailable")
        return [[float(len(text)), 1.0] for text in texts]


def make_zip(files):
    """Build zip bytes from a {member_name: bytes|str} mapping."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            if isinstance(content, str):
                content = content.encode("utf-8")
            archive.writestr(name, content)
    return buffer.getvalue()


def make_pdf(text):
    """Build a one-page PDF showing `text` in Helvetica."""
    stream = f"BT /F1 12 Tf 72 720 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"
    xref_at = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def embedding_service():
    return FakeEmbeddingService()


@pytest.fixture
def client(object_store, embedding_service):
    """Test client with fresh database and fake collaborators for each test."""
    from fastapi.testclient import TestClient

    from chat_import.main import app, get_embedding_service, get_object_store

    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_object_store] = lambda: object_store
    app.dependency_overrides[get_embedding_service] = lambda: embedding_service

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
