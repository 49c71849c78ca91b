import asyncio
import json

import pytest

from chatline.core.exceptions import TransportError
from chatline.schemas.messages import ContentType, LifecycleStatus
from chatline.schemas.sessions import ModelSelector, UploadRef
from chatline.services.chat_controller import ChatController
from chatline.services.events import ChatEvent
from chatline.services.stream_assembler import StreamState
from tests.mocks.fake_transport import InMemorySessions, ScriptedStream, StaticModels

HISTORIES = {
    "a": [
        {"messageType": "USER", "text": "question a", "parentId": 1},
        {"messageType": "AI", "text": "answer a", "parentId": 2},
    ],
    "b": [
        {"messageType": "AI", "text": "answer b", "parentId": 2},
        {"messageType": "USER", "text": "question b", "parentId": 1},
    ],
}


def _data(content: str) -> str:
    return f"data: {json.dumps({'content': content})}\n\n"


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def sessions():
    return InMemorySessions({key: list(records) for key, records in HISTORIES.items()})


def _controller(sessions, stream, models=None):
    controller = ChatController(sessions, stream, models)
    notices = []
    controller.events.subscribe(ChatEvent.NOTICE, notices.append)
    return controller, notices


class TestSubmit:
    async def test_first_submit_creates_session(self, sessions):
        stream = ScriptedStream([_data("Hi"), _data(" there"), "data: [DONE]\n\n"])
        controller, _ = _controller(sessions, stream, StaticModels(ModelSelector(provider_id="p", model_name="m")))
        created = []
        controller.events.subscribe(ChatEvent.SESSION_CREATED, created.append)
        await controller.load_models()

        assembler = await controller.submit("Hello")
        assert await assembler.wait() == StreamState.SUCCESS

        assert controller.session_id == "new-1"
        assert created == [{"session_id": "new-1"}]
        assert "new-1" in [s.session_id for s in controller.sessions]

        user, reply = controller.messages()
        assert (user.role, user.content, user.status) == ("user", "Hello", LifecycleStatus.SUCCESS)
        assert (reply.role, reply.content, reply.status) == ("assistant", "Hi there", LifecycleStatus.SUCCESS)

        request = stream.requests[0]
        assert (request.session_id, request.provider_id, request.model_name) == ("new-1", "p", "m")
        assert not controller.is_sending
        assert controller.active_stream is None

    async def test_submit_with_upload(self, sessions):
        stream = ScriptedStream([_data("Sure"), _data(", here")])
        controller, _ = _controller(sessions, stream)
        await controller.select_session("a")

        assembler = await controller.submit("Summarize this doc", UploadRef(upload_id="u1", content_type=ContentType.PDF))
        await assembler.wait()

        user, reply = controller.messages()[-2:]
        assert (user.attachment.content_type, user.attachment.url) == (ContentType.PDF, "u1")
        assert reply.content == "Sure, here"
        request = stream.requests[0]
        assert (request.session_id, request.upload_id, request.content_type) == ("a", "u1", ContentType.PDF)

    async def test_selected_model_overrides_default(self, sessions):
        stream = ScriptedStream([_data("ok")])
        controller, _ = _controller(sessions, stream, StaticModels(ModelSelector(provider_id="p", model_name="default")))
        await controller.load_models()
        controller.select_model(ModelSelector(provider_id="q", model_name="picked"))

        await (await controller.submit("hi")).wait()
        assert stream.requests[0].model_name == "picked"

    async def test_new_submit_cancels_running_stream(self, sessions):
        stream = ScriptedStream([_data("one"), _data(" two"), _data(" three")], gated=True)
        controller, notices = _controller(sessions, stream)
        await controller.select_session("a")

        first = await controller.submit("first")
        stream.release()
        await _until(lambda: first.content == "one")

        second = await controller.submit("second")
        assert first.state == StreamState.ABORTED
        stream.release(3)
        assert await second.wait() == StreamState.SUCCESS
        await first.wait()

        contents = [(m.role, m.content, m.status) for m in controller.messages()[2:]]
        assert contents == [
            ("user", "first", LifecycleStatus.SUCCESS),
            ("assistant", "one", LifecycleStatus.ABORTED),
            ("user", "second", LifecycleStatus.SUCCESS),
            ("assistant", "one two three", LifecycleStatus.SUCCESS),
        ]
        assert notices == []

    async def test_stream_error_emits_notice(self, sessions):
        stream = ScriptedStream([_data("half")], error=TransportError("Chat stream failed"))
        controller, notices = _controller(sessions, stream)
        await controller.select_session("a")

        assert await (await controller.submit("hi")).wait() == StreamState.ERROR
        reply = controller.messages()[-1]
        assert (reply.content, reply.status) == ("half", LifecycleStatus.ERROR)
        assert notices == [{"level": "error", "message": "Chat stream failed"}]

    async def test_session_create_failure(self, sessions):
        class NoCreate(InMemorySessions):
            async def create_session(self):
                raise TransportError("Server error, please try again later.", status=500)

        controller, notices = _controller(NoCreate(), ScriptedStream([]))
        assert await controller.submit("hi") is None
        assert controller.messages() == ()
        assert notices[0]["message"] == "Server error, please try again later."

    async def test_session_switch_while_creating_abandons_submit(self, sessions):
        sessions.create_delay = asyncio.Event()
        stream = ScriptedStream([_data("reply")])
        controller, _ = _controller(sessions, stream)

        pending = asyncio.create_task(controller.submit("hi"))
        await asyncio.sleep(0)
        await controller.select_session("a")
        sessions.create_delay.set()

        assert await pending is None
        assert controller.session_id == "a"
        assert [m.content for m in controller.messages()] == ["question a", "answer a"]
        assert stream.requests == []

    async def test_concurrent_first_submits_use_one_session(self, sessions):
        sessions.create_delay = asyncio.Event()
        stream = ScriptedStream([_data("reply")])
        controller, _ = _controller(sessions, stream)

        first = asyncio.create_task(controller.submit("one"))
        second = asyncio.create_task(controller.submit("two"))
        await asyncio.sleep(0)
        sessions.create_delay.set()
        started = [a for a in await asyncio.gather(first, second) if a is not None]

        assert len(started) == 1
        assert await started[0].wait() == StreamState.SUCCESS
        assert controller.session_id == "new-1"
        assert [m.role for m in controller.messages()] == ["user", "assistant"]
        assert [r.session_id for r in stream.requests] == ["new-1"]

    async def test_submit_waits_for_pending_history(self, sessions):
        sessions.history_delay["a"] = asyncio.Event()
        stream = ScriptedStream([_data("reply")])
        controller, _ = _controller(sessions, stream)

        load = asyncio.create_task(controller.select_session("a"))
        await _until(lambda: controller.history_loading)
        pending = asyncio.create_task(controller.submit("hi"))
        await asyncio.sleep(0)
        assert controller.messages() == ()

        sessions.history_delay["a"].set()
        await load
        assembler = await pending
        assert await assembler.wait() == StreamState.SUCCESS
        assert [(m.role, m.content) for m in controller.messages()] == [
            ("user", "question a"),
            ("assistant", "answer a"),
            ("user", "hi"),
            ("assistant", "reply"),
        ]

    async def test_submit_dropped_when_session_changes_during_history_wait(self, sessions):
        sessions.history_delay["a"] = asyncio.Event()
        stream = ScriptedStream([_data("reply")])
        controller, _ = _controller(sessions, stream)

        load = asyncio.create_task(controller.select_session("a"))
        await _until(lambda: controller.history_loading)
        pending = asyncio.create_task(controller.submit("hi"))
        await asyncio.sleep(0)
        await controller.select_session("b")

        assert await pending is None
        sessions.history_delay["a"].set()
        await load
        assert controller.session_id == "b"
        assert [m.content for m in controller.messages()] == ["question b", "answer b"]
        assert stream.requests == []

    async def test_failing_store_listener_does_not_stall_controller(self, sessions):
        stream = ScriptedStream([_data("ok")])
        controller, _ = _controller(sessions, stream)
        await controller.select_session("a")

        def broken(_messages):
            raise RuntimeError("render bug")

        controller.store.subscribe(broken)
        assembler = await controller.submit("hi")
        assert await assembler.wait() == StreamState.SUCCESS
        assert controller.active_stream is None
        assert controller.messages()[-1].content == "ok"

    async def test_cancel_is_not_an_error(self, sessions):
        stream = ScriptedStream([_data("x")], gated=True)
        controller, notices = _controller(sessions, stream)
        await controller.select_session("a")

        assembler = await controller.submit("hi")
        controller.cancel()
        assert await assembler.wait() == StreamState.ABORTED
        assert controller.messages()[-1].status == LifecycleStatus.ABORTED
        assert notices == []


class TestSessionSwitch:
    async def test_history_loaded_in_order(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]))
        messages = await controller.select_session("b")
        assert [m.content for m in messages] == ["question b", "answer b"]
        assert not controller.history_loading

    async def test_switch_cancels_stream_and_drops_late_deltas(self, sessions):
        stream = ScriptedStream([_data("one"), _data(" two")], gated=True)
        controller, _ = _controller(sessions, stream)
        await controller.select_session("a")

        assembler = await controller.submit("hi")
        stream.release()
        await _until(lambda: assembler.content == "one")

        await controller.select_session("b")
        stream.release()
        assert await assembler.wait() == StreamState.ABORTED
        assert [m.content for m in controller.messages()] == ["question b", "answer b"]

    async def test_history_failure_leaves_empty_list(self, sessions):
        sessions.fail_history = True
        controller, notices = _controller(sessions, ScriptedStream([]))
        assert await controller.select_session("a") == ()
        assert controller.session_id == "a"
        assert notices == [{"level": "error", "message": "Network error, please try again later."}]

    async def test_stale_history_load_discarded(self, sessions):
        gate = asyncio.Event()
        sessions.history_delay["a"] = gate
        controller, _ = _controller(sessions, ScriptedStream([]))

        slow = asyncio.create_task(controller.select_session("a"))
        await _until(lambda: controller.history_loading)
        await controller.select_session("b")
        gate.set()
        await slow

        assert controller.session_id == "b"
        assert [m.content for m in controller.messages()] == ["question b", "answer b"]

    async def test_reselecting_same_session_keeps_messages(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]))
        first = await controller.select_session("a")
        assert await controller.select_session("a") == first

    async def test_clear(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]))
        await controller.select_session("a")
        controller.clear()
        assert controller.session_id is None
        assert controller.messages() == ()


class TestSessionManagement:
    async def test_rename_trims_title(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]))
        await controller.rename_session("a", "  Trip plans  ")
        await controller.rename_session("b", "   ")
        assert sessions.titles == {"a": "Trip plans", "b": "b"}
        assert {s.session_title for s in controller.sessions} == {"Trip plans", "b"}

    async def test_delete_active_session(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]))
        await controller.select_session("a")
        assert await controller.delete_sessions("a") is True
        assert controller.session_id is None
        assert controller.messages() == ()
        assert [s.session_id for s in controller.sessions] == ["b"]

    async def test_delete_other_session(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]))
        await controller.select_session("a")
        assert await controller.delete_sessions(["b"]) is False
        assert controller.session_id == "a"
        assert len(controller.messages()) == 2

    async def test_refresh_clears_vanished_session(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]))
        await controller.select_session("a")
        del sessions.titles["a"]
        await controller.refresh_sessions()
        assert controller.session_id is None


class TestEvents:
    async def test_login_success_refreshes(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]), StaticModels(ModelSelector(provider_id="p", model_name="m")))
        controller.events.emit(ChatEvent.LOGIN_SUCCESS)
        await _until(lambda: controller.sessions and controller.default_model is not None)
        assert {s.session_id for s in controller.sessions} == {"a", "b"}
        assert controller.model_providers[0].provider_id == "p"
        await controller.close()

    async def test_model_changed_reloads(self, sessions):
        models = StaticModels()
        controller, _ = _controller(sessions, ScriptedStream([]), models)
        models.default = ModelSelector(provider_id="p2", model_name="new")
        controller.events.emit(ChatEvent.MODEL_CHANGED)
        await _until(lambda: controller.default_model is not None)
        assert controller.default_model.model_name == "new"

    async def test_close_unsubscribes(self, sessions):
        controller, _ = _controller(sessions, ScriptedStream([]), StaticModels(ModelSelector(model_name="m")))
        await controller.close()
        controller.events.emit(ChatEvent.MODEL_CHANGED)
        await asyncio.sleep(0)
        assert controller.default_model is None
