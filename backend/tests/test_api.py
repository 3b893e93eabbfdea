"""
Tests for the HTTP command surface.

Verifies:
1. Endpoints accept camelCase transcripts and return camelCase payloads
2. MemoryManagerError subclasses map to their HTTP status with a coded body
3. Invalid ranges and directive stages are 400s
4. Documents persist through the SQL repository
"""

import pytest
import sys
import os

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storymem.api.memory import get_memory_manager
from storymem.database import Base
from storymem.main import app
from storymem.models import ConversationMemory  # noqa: F401  (registers the table)
from storymem.services import MemoryManager
from storymem.services.persistence import SqlFactStoreRepository

from conftest import ScriptedGateway, extraction_reply, make_page, raw_page, text_reply


def _transcript(count, **extra):
    turns = [
        {"id": f"t{i}", "name": "阿明" if i % 2 == 0 else "林医生", "text": f"第{i}条消息", "isUser": i % 2 == 0}
        for i in range(count)
    ]
    return {"turns": turns, "userName": "阿明", "characterName": "林医生", **extra}


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def manager(settings, session_factory, gateway):
    return MemoryManager(settings, repository=SqlFactStoreRepository(session_factory), gateway=gateway)


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_memory_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPipelineEndpoints:
    def test_turn_received_then_recall(self, client, gateway, session_factory):
        gateway.responses.append(extraction_reply([raw_page("诊所初遇")], timeline="D1: 雨夜初遇"))
        gateway.chat_responses.append(text_reply("她想起了那个雨夜。"))

        response = client.post("/api/memory/c1/turn-received", json={"transcript": _transcript(5)})

        assert response.status_code == 200
        report = response.json()["report"]
        assert report["pagesCreated"] == 1
        assert report["watermark"] == 4

        response = client.post("/api/memory/c1/recall", json={"transcript": _transcript(5)})

        body = response.json()
        assert body["result"]["tier"] == "agent"
        assert "D1: 雨夜初遇" in body["storyIndex"]

        last = client.get("/api/memory/c1/recall/last").json()
        assert last["narrative"] == "她想起了那个雨夜。"

        # Persisted through SQL, visible to a fresh repository
        fresh = SqlFactStoreRepository(session_factory).load("c1")
        assert fresh["timeline"] == "D1: 雨夜初遇"

    def test_below_interval_is_skipped(self, client):
        response = client.post("/api/memory/c1/turn-received", json={"transcript": _transcript(2)})
        assert response.json()["report"]["skippedReason"] == "below_interval"

    def test_forced_extract_returns_notices(self, client, gateway):
        gateway.responses.append(extraction_reply([raw_page()]))

        body = client.post("/api/memory/c1/extract", json={"transcript": _transcript(8)}).json()

        assert body["report"]["mode"] == "forced"
        assert any(n["level"] == "success" for n in body["notices"])

    def test_notices_are_returned_to_their_own_conversation(self, client, manager):
        manager.events.notify_user("c1", "warning", "只属于c1的提示")

        other = client.post("/api/memory/c2/message-deleted", json={"transcript": _transcript(2)}).json()
        own = client.post("/api/memory/c1/message-deleted", json={"transcript": _transcript(2)}).json()

        assert other["notices"] == []
        assert own["notices"] == [{"level": "warning", "message": "只属于c1的提示"}]

    def test_recall_index_comes_from_its_own_store(self, client, manager):
        manager.store("c1").timeline = "D1: 对话一"
        manager.store("c2").timeline = "D1: 对话二"

        body = client.post("/api/memory/c1/recall", json={"transcript": _transcript(2)}).json()
        client.post("/api/memory/c2/recall", json={"transcript": _transcript(2)})

        assert "D1: 对话一" in body["storyIndex"]
        assert body["result"]["indexText"] == body["storyIndex"]
        assert "对话二" not in manager.last_recall("c1").index_text

    def test_pages_listing(self, client, manager):
        manager.store("c1").pages.append(make_page("pg_1", title="页"))
        body = client.get("/api/memory/c1/pages").json()
        assert body["total"] == 1
        assert body["pages"][0]["compressionLevel"] == 0


class TestMaintenanceEndpoints:
    def test_mark_extracted_validates_range(self, client):
        response = client.post(
            "/api/memory/c1/mark-extracted",
            json={"transcript": _transcript(3), "start": 0, "end": 7},
        )
        assert response.status_code == 400

    def test_mark_extracted_and_health(self, client):
        client.post("/api/memory/c1/mark-extracted", json={"transcript": _transcript(4), "start": 0, "end": 3})

        body = client.post("/api/memory/c1/health", json={"transcript": _transcript(2)}).json()

        assert body["orphanDates"] == ["t2", "t3"]
        assert body["healthy"] is False

    def test_directive(self, client):
        response = client.put("/api/memory/c1/directive", json={"stage": "global", "text": "少写环境"})
        assert response.json()["global"] == "少写环境"
        assert client.put("/api/memory/c1/directive", json={"stage": "bogus"}).status_code == 400

    def test_export_import(self, client, manager):
        manager.store("c1").timeline = "D1: 导出"
        document = client.get("/api/memory/c1/export").json()

        body = client.post("/api/memory/c2/import", json={"document": document}).json()

        assert body["pages"] == 0
        assert manager.store("c2").timeline == "D1: 导出"


class TestErrorMapping:
    """Typed errors become coded JSON responses."""

    def test_embedding_not_configured_is_409(self, client):
        response = client.post("/api/memory/c1/vectors/rebuild")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "EMBEDDING_NOT_CONFIGURED"

    def test_categories_without_secondary(self, client, manager):
        manager.gateway._has_secondary = False
        manager.store("c1").pages.append(make_page("pg_1"))

        response = client.post("/api/memory/c1/categories/rebuild")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "LLM_NOT_CONFIGURED"


def test_health_endpoint():
    body = TestClient(app).get("/health").json()
    assert body["status"] == "healthy"
