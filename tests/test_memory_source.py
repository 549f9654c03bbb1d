from __future__ import annotations

import asyncio

from phase_runner.sessions.memory import InMemorySessionSource


class TestInMemorySessionSource:
    def test_sessions_get_sequential_ids(self, tmp_path):
        async def _run():
            source = InMemorySessionSource()
            first = await source.create_session("one", tmp_path)
            second = await source.create_session("two")
            return first, second, source.sessions

        first, second, sessions = asyncio.run(_run())
        assert (first, second) == ("ses-1", "ses-2")
        assert sessions["ses-1"] == {"title": "one", "directory": str(tmp_path)}

    def test_emit_reaches_every_open_subscription_in_order(self):
        async def _run():
            source = InMemorySessionSource()
            a = await source.subscribe()
            b = await source.subscribe()
            source.emit_text("ses-1", "one")
            source.emit_idle("ses-1")
            source.close_stream()
            return [e.type async for e in a], [e.type async for e in b], source.subscriber_count

        a, b, remaining = asyncio.run(_run())
        assert a == b == ["message.part.updated", "session.idle"]
        assert remaining == 0

    def test_late_subscription_misses_earlier_events(self):
        async def _run():
            source = InMemorySessionSource()
            source.emit_idle("ses-1")
            sub = await source.subscribe()
            source.emit_error("ses-1", "boom")
            source.close_stream()
            return [e.type async for e in sub]

        assert asyncio.run(_run()) == ["session.error"]

    def test_send_input_runs_responder(self):
        async def responder(source, session_id, text):
            source.emit_text(session_id, text.upper())

        async def _run():
            source = InMemorySessionSource(responder=responder)
            sub = await source.subscribe()
            await source.send_input("ses-1", "hi")
            event = await sub.__anext__()
            await source.aclose()
            return event, source.inputs

        event, inputs = asyncio.run(_run())
        assert event.properties["part"]["text"] == "HI"
        assert inputs == [("ses-1", "hi")]

    def test_closed_subscription_stops(self):
        async def _run():
            source = InMemorySessionSource()
            sub = await source.subscribe()
            await sub.aclose()
            source.emit_idle("ses-1")
            return [e async for e in sub], source.subscriber_count

        assert asyncio.run(_run()) == ([], 0)
