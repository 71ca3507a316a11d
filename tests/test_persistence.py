"""
Tests for the persistence sinks.
"""

import json

import httpx
import pytest

from polyglot.config import PersistenceConfig
from polyglot.errors import PersistenceError
from polyglot.models import Speaker
from polyglot.persistence import JsonFileSink, SupabaseSink, open_sink


class TestJsonFileSink:

    async def test_discussion_round_trip(self, tmp_path):
        path = tmp_path / "discussions.json"
        sink = JsonFileSink(path)

        ref = await sink.create_discussion("Italian lesson")
        await sink.append_turn(ref.id, Speaker.USER, "Ciao")
        await sink.append_turn(ref.id, Speaker.ASSISTANT, "Ciao! Come stai?")
        summary = await sink.end_discussion(ref.id)

        assert summary.name == "Italian lesson"
        assert summary.turn_count == 2
        assert summary.user_turns == 1
        assert summary.assistant_turns == 1
        assert summary.end_time is not None

        stored = json.loads(path.read_text())
        assert [t["text"] for t in stored[0]["turns"]] == ["Ciao", "Ciao! Come stai?"]
        assert stored[0]["turns"][0]["speaker"] == "user"

    async def test_reload_keeps_discussions(self, tmp_path):
        path = tmp_path / "discussions.json"
        first = JsonFileSink(path)
        ref = await first.create_discussion("One")
        await first.append_turn(ref.id, Speaker.USER, "hola")

        second = JsonFileSink(path)
        assert [d.id for d in second.discussions()] == [ref.id]
        await second.append_turn(ref.id, Speaker.ASSISTANT, "¡hola!")
        assert len(second.discussions()[0].turns) == 2

    async def test_feedback(self, tmp_path):
        sink = JsonFileSink(tmp_path / "d.json")
        ref = await sink.create_discussion("Lesson")
        await sink.end_discussion(ref.id)
        await sink.attach_feedback(ref.id, 5, "very clear")

        feedback = sink.discussions()[0].feedback
        assert feedback.rating == 5
        assert feedback.notes == "very clear"

    async def test_unknown_discussion(self, tmp_path):
        sink = JsonFileSink(tmp_path / "d.json")
        with pytest.raises(PersistenceError, match="unknown discussion"):
            await sink.append_turn("missing", Speaker.USER, "x")

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "d.json"
        path.write_text("{not json")
        with pytest.raises(PersistenceError):
            JsonFileSink(path)

    async def test_unwritable_location(self, tmp_path):
        sink = JsonFileSink(tmp_path / "missing-dir" / "d.json")
        with pytest.raises(PersistenceError, match="cannot write"):
            await sink.create_discussion("Lesson")

    async def test_failed_write_leaves_memory_matching_file(self, tmp_path, monkeypatch):
        path = tmp_path / "d.json"
        sink = JsonFileSink(path)
        ref = await sink.create_discussion("Lesson")
        await sink.append_turn(ref.id, Speaker.USER, "Hallo")

        def disk_full():
            raise OSError("No space left on device")

        monkeypatch.setattr(sink, "_write", disk_full)
        with pytest.raises(PersistenceError, match="cannot write"):
            await sink.append_turn(ref.id, Speaker.ASSISTANT, "Guten Tag")
        with pytest.raises(PersistenceError):
            await sink.end_discussion(ref.id)
        with pytest.raises(PersistenceError):
            await sink.attach_feedback(ref.id, 4)
        with pytest.raises(PersistenceError):
            await sink.create_discussion("Second")

        discussions = sink.discussions()
        assert len(discussions) == 1
        assert [t.text for t in discussions[0].turns] == ["Hallo"]
        assert discussions[0].end_time is None
        assert discussions[0].feedback is None

        monkeypatch.undo()
        await sink.append_turn(ref.id, Speaker.ASSISTANT, "Wie geht's?")
        stored = json.loads(path.read_text())
        assert [t["text"] for t in stored[0]["turns"]] == ["Hallo", "Wie geht's?"]


class FakePostgrest:
    """Minimal PostgREST behaviour for the three tables the sink touches."""

    def __init__(self):
        self.requests = []
        self.messages = []
        self.fail_status = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status:
            return httpx.Response(self.fail_status, text="boom")
        table = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content) if request.content else None
        if table == "chat_conversations" and request.method == "POST":
            return httpx.Response(201, json=[{"id": "c-1", "created_at": "2024-05-01T10:00:00+00:00", **body}])
        if table == "chat_conversations" and request.method == "PATCH":
            return httpx.Response(200, json=[{
                "id": "c-1", "title": "Lesson",
                "created_at": "2024-05-01T10:00:00+00:00", **body,
            }])
        if table == "chat_messages" and request.method == "POST":
            self.messages.append(body)
            return httpx.Response(201, json=[body])
        if table == "chat_messages" and request.method == "GET":
            return httpx.Response(200, json=[{"role": m["role"]} for m in self.messages])
        if table == "reviews":
            return httpx.Response(201, json=[body])
        return httpx.Response(404)


@pytest.fixture
def postgrest():
    return FakePostgrest()


@pytest.fixture
def supabase(postgrest):
    client = httpx.AsyncClient(transport=httpx.MockTransport(postgrest))
    return SupabaseSink("https://proj.supabase.co/", "anon-key", user_id="u-42", client=client)


class TestSupabaseSink:

    async def test_create_discussion(self, supabase, postgrest):
        ref = await supabase.create_discussion("Lesson")

        request = postgrest.requests[0]
        assert ref.id == "c-1"
        assert str(request.url) == "https://proj.supabase.co/rest/v1/chat_conversations"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"
        assert request.headers["Prefer"] == "return=representation"
        assert json.loads(request.content) == {"title": "Lesson", "user_id": "u-42"}

    async def test_append_turn_touches_conversation(self, supabase, postgrest):
        await supabase.append_turn("c-1", Speaker.ASSISTANT, "Bravo!")

        insert, touch = postgrest.requests
        assert json.loads(insert.content) == {"conversation_id": "c-1", "role": "assistant", "content": "Bravo!"}
        assert touch.method == "PATCH"
        assert touch.url.params["id"] == "eq.c-1"
        assert "updated_at" in json.loads(touch.content)

    async def test_end_discussion_counts_messages(self, supabase):
        await supabase.append_turn("c-1", Speaker.USER, "Ciao")
        await supabase.append_turn("c-1", Speaker.ASSISTANT, "Ciao!")
        await supabase.append_turn("c-1", Speaker.USER, "Grazie")

        summary = await supabase.end_discussion("c-1")

        assert summary.id == "c-1"
        assert summary.name == "Lesson"
        assert summary.turn_count == 3
        assert summary.user_turns == 2
        assert summary.assistant_turns == 1

    async def test_feedback_goes_to_reviews(self, supabase, postgrest):
        await supabase.attach_feedback("c-1", 3, "a bit fast")

        request = postgrest.requests[0]
        body = json.loads(request.content)
        assert request.url.path.endswith("/reviews")
        assert body["conversation_id"] == "c-1"
        assert body["rating"] == 3
        assert body["comment"] == "a bit fast"

    async def test_http_error_raises(self, supabase, postgrest):
        postgrest.fail_status = 500
        with pytest.raises(PersistenceError, match="HTTP 500"):
            await supabase.append_turn("c-1", Speaker.USER, "x")

    async def test_network_error_raises(self):
        def refuse(request):
            raise httpx.ConnectError("offline", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        sink = SupabaseSink("https://proj.supabase.co", "key", client=client)
        with pytest.raises(PersistenceError):
            await sink.create_discussion("Lesson")

    def test_requires_credentials(self):
        with pytest.raises(PersistenceError):
            SupabaseSink("", "")


class TestOpenSink:

    def test_json_by_default(self, tmp_path):
        sink = open_sink(PersistenceConfig(path=str(tmp_path / "d.json")))
        assert isinstance(sink, JsonFileSink)

    async def test_supabase(self):
        sink = open_sink(PersistenceConfig(backend="supabase", supabase_url="https://x.supabase.co", supabase_key="k"))
        assert isinstance(sink, SupabaseSink)
        await sink.aclose()
