import os
import tempfile
import threading
import uuid

# Settings are read at import time, so point them at throwaway locations first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="ledgerline-test-")
os.environ["JWT_SECRET"] = "ledgerline-test-secret"

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
import models  # noqa: F401
from models import Account, ParsingRule, Statement, StatementStatus, utcnow
from services.llm_client import LLMResponse


class FakeLLM:
    """Stand-in for ``generate_json``.

    Either queue canned responses (popped in call order) or set ``handler``
    to a function of the prompt for calls that run concurrently.
    """

    def __init__(self):
        self.responses = []
        self.handler = None
        self.calls = []
        self._lock = threading.Lock()

    def queue(self, *responses):
        self.responses.extend(responses)

    def __call__(self, prompt, images=None, temperature=0.1, max_tokens=4096, deployment=None):
        with self._lock:
            self.calls.append({"prompt": prompt, "images": images, "temperature": temperature})
            if self.handler is not None:
                item = self.handler(prompt)
            elif self.responses:
                item = self.responses.pop(0)
            else:
                raise AssertionError(f"Unexpected model call: {prompt[:80]}")
        if isinstance(item, Exception):
            raise item
        if isinstance(item, LLMResponse):
            return item
        text = item if isinstance(item, str) else json.dumps(item)
        return LLMResponse(text=text, input_tokens=100, output_tokens=50)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    import orchestrator

    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    monkeypatch.setattr(database, "SessionLocal", factory)
    monkeypatch.setattr(orchestrator, "SessionLocal", factory)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_llm(monkeypatch):
    fake = FakeLLM()
    monkeypatch.setattr("agents.base.generate_json", fake)
    return fake


@pytest.fixture
def user_id():
    return "user-1"


@pytest.fixture
def auth_headers(user_id):
    from routers.auth import create_access_token
    return {"Authorization": f"Bearer {create_access_token(user_id, 'owner@example.com')}"}


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient
    from main import app
    return TestClient(app)


@pytest.fixture
def account(db, user_id):
    acc = Account(
        user_id=user_id,
        bank_name="Maduro & Curiel's Bank",
        bank_identifier="maduro_curiel_s_bank",
        account_number="123456789",
        currency="USD",
    )
    db.add(acc)
    db.commit()
    db.refresh(acc)
    return acc


@pytest.fixture
def make_rule(db, user_id):
    def _make(confirmed=True, created_by=None, usage_count=0, **fields):
        values = dict(
            bank_identifier="maduro_curiel_s_bank",
            bank_display_name="Maduro & Curiel's Bank",
            header_row=0,
            date_column="Date",
            description_column="Desc",
            amount_column="Amount",
            date_format="YYYY-MM-DD",
            amount_format="sign",
            type_detection="sign",
            created_by=created_by or user_id,
            usage_count=usage_count,
            confirmed_at=utcnow() if confirmed else None,
        )
        values.update(fields)
        rule = ParsingRule(**values)
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule
    return _make


@pytest.fixture
def make_statement(db, account, user_id):
    """Write ``content`` to the upload dir and register a statement for it."""
    from config import settings

    def _make(content, file_name="statement.csv", mime_type="text/csv", file_type="csv",
              status=StatementStatus.UPLOADED.value):
        path = os.path.join(settings.UPLOAD_DIR, f"{uuid.uuid4()}-{file_name}")
        data = content.encode("utf-8") if isinstance(content, str) else content
        with open(path, "wb") as f:
            f.write(data)
        statement = Statement(
            user_id=user_id,
            account_id=account.id,
            file_url=path,
            original_file_name=file_name,
            mime_type=mime_type,
            file_type=file_type,
            file_size=len(data),
            status=status,
            warnings=[],
        )
        db.add(statement)
        db.commit()
        db.refresh(statement)
        return statement
    return _make
