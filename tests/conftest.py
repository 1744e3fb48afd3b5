from __future__ import annotations

import base64
import io
import os
import threading
import uuid
from typing import Any, Sequence
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from signflow.api.deps import get_db
from signflow.db import session as db_session_module
from signflow.db.session import build_engine
from signflow.main import create_app
from signflow.models.signing import SigningPolicy
from signflow.schemas.signing import FieldCreate, SignatureRequestCreate, SignaturePayload, SignerCreate
from signflow.services import SigningRuntime, SigningServices, build_services
from signflow.services.audit import AuditWriter
from signflow.services.context import ActorContext
from signflow.services.notification import Recipient
from signflow.services.renderer import PdfArtifactRenderer, RenderedArtifact, ResolvedField
from signflow.services.storage import LocalStorage

INITIATOR = ActorContext(actor_id="initiator-1", ip_address="127.0.0.1", user_agent="pytest")


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
        connect_args = {"options": f"-csearch_path={schema_name},public -cclient_encoding={client_encoding}"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = build_engine(test_database_url, echo=False)

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    yield engine

    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


class RecordingNotifier:
    """Collects notifications instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, list[Recipient], dict[str, Any]]] = []
        self._lock = threading.Lock()

    def send(self, event: str, recipients: Sequence[Recipient], context: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((event, list(recipients), dict(context)))

    def events(self, event: str | None = None) -> list[tuple[str, list[Recipient], dict[str, Any]]]:
        return [entry for entry in self.sent if event is None or entry[0] == event]

    def emails(self, event: str) -> list[str]:
        return [recipient.email for _, recipients, _ in self.events(event) for recipient in recipients]


class RecordingRenderer:
    """Wraps the PDF renderer, remembers every call and can be told to fail."""

    def __init__(self, inner: PdfArtifactRenderer) -> None:
        self.inner = inner
        self.calls: list[tuple[UUID, list[ResolvedField]]] = []
        self.fail_next = 0
        self._lock = threading.Lock()

    def render(
        self,
        field_values: Sequence[ResolvedField],
        source_document_ref: str,
        *,
        request_id: UUID,
    ) -> RenderedArtifact:
        with self._lock:
            self.calls.append((request_id, list(field_values)))
            if self.fail_next:
                self.fail_next -= 1
                raise RuntimeError("renderer unavailable")
        return self.inner.render(field_values, source_document_ref, request_id=request_id)


@pytest.fixture()
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(tmp_path / "storage")


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def renderer(storage) -> RecordingRenderer:
    return RecordingRenderer(PdfArtifactRenderer(storage))


@pytest.fixture()
def runtime(db_engine, notifier, renderer) -> SigningRuntime:
    audit = AuditWriter(lambda: Session(db_engine), synchronous=True)
    signing_runtime = SigningRuntime(audit=audit, notifier=notifier, renderer=renderer)
    signing_runtime.start()
    yield signing_runtime
    signing_runtime.stop()


@pytest.fixture()
def services(db_session, runtime) -> SigningServices:
    return build_services(db_session, runtime)


@pytest.fixture()
def make_services(db_engine, runtime):
    """Services bound to a fresh session, one per worker thread."""
    sessions: list[Session] = []

    def _make() -> SigningServices:
        session = Session(db_engine)
        sessions.append(session)
        return build_services(session, runtime)

    yield _make
    for session in sessions:
        session.close()


@pytest.fixture()
def client(db_engine, runtime) -> TestClient:
    app = create_app(runtime)

    def override_get_db():
        with Session(db_engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def png_data_url(color: str = "black", size: tuple[int, int] = (40, 16)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def request_payload(
    emails: Sequence[str] = ("ana@example.com", "bruno@example.com"),
    *,
    policy: SigningPolicy = SigningPolicy.SEQUENTIAL,
    with_fields: bool = True,
    **overrides: Any,
) -> SignatureRequestCreate:
    signers = [SignerCreate(email=email, name=email.split("@")[0].title()) for email in emails]
    fields = []
    if with_fields:
        fields = [
            FieldCreate(
                name=f"signature_{index}",
                signer_email=email,
                page=1,
                x=0.1,
                y=0.1 + index * 0.1,
                width=0.3,
                height=0.05,
            )
            for index, email in enumerate(emails)
        ]
    values: dict[str, Any] = {
        "document_ref": "documents/contract.pdf",
        "title": "Service agreement",
        "policy": policy,
        "signers": signers,
        "fields": fields,
        "initiator_email": "owner@example.com",
    }
    values.update(overrides)
    return SignatureRequestCreate(**values)


def typed_payload(name: str = "Ana", **values: Any) -> SignaturePayload:
    return SignaturePayload(typed_name=name, method="typed", **values)
