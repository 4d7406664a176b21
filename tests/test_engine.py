"""Tests for the funnel state machine."""

import pytest

from funnel_server.engine import FunnelEngine, pix_key, step_key

JID = "5511988887777@s.whatsapp.net"

WALKTHROUGH = {
    "WALK": {
        "id": "WALK",
        "name": "Walkthrough",
        "steps": [
            {"id": "s1", "type": "text", "text": "Olá"},
            {"id": "s2", "type": "delay", "delaySeconds": 30},
            {"id": "s3", "type": "typing", "typingSeconds": 4},
            {"id": "s4", "type": "image+text", "text": "Veja", "mediaUrl": "http://m/img.jpg", "waitForReply": True},
            {"id": "s5", "type": "video", "mediaUrl": "http://m/v.mp4"},
        ],
    }
}

BRANCHING = {
    "BRANCH": {
        "id": "BRANCH",
        "name": "Branching",
        "steps": [
            {"id": "s1", "type": "text", "text": "Pergunta", "waitForReply": True, "nextOnReply": 2},
            {"id": "s2", "type": "text", "text": "Pulado"},
            {"id": "s3", "type": "text", "text": "Destino", "waitForReply": True},
        ],
    }
}

TIMEOUT = {
    "TIMEOUT": {
        "id": "TIMEOUT",
        "name": "Timeout",
        "steps": [
            {
                "id": "s1",
                "type": "text",
                "text": "Responde?",
                "waitForReply": True,
                "timeoutMinutes": 2,
                "nextOnTimeout": 2,
            },
            {"id": "s2", "type": "text", "text": "Respondeu", "waitForReply": True},
            {"id": "s3", "type": "text", "text": "Sem resposta", "waitForReply": True},
        ],
    }
}


class TestInstanceAssignment:
    def test_round_robin_for_new_numbers(self, make_engine):
        engine = make_engine()
        assigned = [engine.assign_instance(f"55119000000{i}@s.whatsapp.net") for i in range(4)]
        assert assigned == ["D01", "D02", "D03", "D01"]

    def test_sticky_instance_reused(self, make_engine, events):
        engine = make_engine()
        first = engine.assign_instance(JID)
        engine.assign_instance("5511000000000@s.whatsapp.net")
        assert engine.assign_instance(JID) == first
        assert "STICKY_INSTANCE" in events.types()

    def test_requires_instances(self, make_engine):
        engine = make_engine()
        with pytest.raises(ValueError):
            FunnelEngine(
                engine.funnels, engine.conversations, engine.client, engine.events, engine.scheduler, []
            )

    async def test_sticky_rebuilt_from_stored_conversations(self, make_engine):
        engine = make_engine()
        await engine.start_funnel(JID, "FAB_APROVADA", "order-1", "Ana", "FAB", 97)
        fresh = make_engine()
        fresh.conversations.load()
        assert fresh.rebuild_sticky() == 1
        assert fresh.assign_instance(JID) == "D01"


class TestStartFunnel:
    async def test_first_step_sent_and_waits(self, make_engine, client):
        engine = make_engine()
        conversation = await engine.start_funnel(JID, "CS_APROVADA", "order-1", "Ana", "CS", 47.0)

        assert client.names() == ["text"]
        _, (remote_jid, text, instance) = client.calls[0]
        assert remote_jid == JID
        assert instance == "D01"
        assert text.startswith("Oi!")
        assert conversation.waiting_for_response is True
        assert conversation.stepIndex == 0
        assert engine.conversations.get(JID) is conversation

    async def test_conversation_persisted(self, make_engine, settings):
        engine = make_engine()
        await engine.start_funnel(JID, "CS_APROVADA", "order-1", "Ana", "CS", 47.0)
        assert settings.conversations_file.exists()
        assert JID in settings.conversations_file.read_text(encoding="utf-8")

    async def test_unknown_funnel_logs_error(self, make_engine, client, events):
        engine = make_engine()
        await engine.start_funnel(JID, "MISSING")
        assert client.calls == []
        assert "ERROR" in events.types()

    async def test_restart_replaces_conversation(self, make_engine):
        engine = make_engine()
        first = await engine.start_funnel(JID, "CS_PIX", "order-1", "Ana", "CS")
        second = await engine.start_funnel(JID, "CS_APROVADA", "order-1", "Ana", "CS")
        assert first.conversationId != second.conversationId
        assert engine.conversations.get(JID).funnelId == "CS_APROVADA"
        assert second.instanceName == first.instanceName


class TestAdvancing:
    async def test_walkthrough_until_completion(self, make_engine, client, sleeper, events):
        engine = make_engine(WALKTHROUGH)
        await engine.start_funnel(JID, "WALK", "o-1", "Ana")
        await engine.scheduler.drain()

        conversation = engine.conversations.get(JID)
        assert conversation.stepIndex == 3
        assert conversation.waiting_for_response is True
        assert client.names() == ["text", "presence", "image"]
        assert client.calls[1][1][1] == "composing"
        assert 30 in sleeper.calls
        assert 4 in sleeper.calls
        _, (_, media, caption, _) = client.calls[2]
        assert (media, caption) == ("http://m/img.jpg", "Veja")

        assert await engine.handle_reply(JID) is True
        await engine.scheduler.drain()

        assert client.names()[-1] == "video"
        assert client.calls[-1][1][2] == ""
        assert engine.conversations.get(JID) is None
        assert "FUNNEL_COMPLETE" in events.types()

    async def test_delay_step_adds_step_gap(self, make_engine, sleeper):
        engine = make_engine(WALKTHROUGH)
        engine.step_gap = 1.0
        await engine.start_funnel(JID, "WALK")
        await engine.scheduler.drain()

        assert 31 in sleeper.calls
        assert 30 not in sleeper.calls

    async def test_reply_ignored_when_not_waiting(self, make_engine):
        engine = make_engine()
        assert await engine.handle_reply(JID) is False

    async def test_next_on_reply_jumps(self, make_engine, client):
        engine = make_engine(BRANCHING)
        await engine.start_funnel(JID, "BRANCH")
        await engine.handle_reply(JID)
        await engine.scheduler.drain()

        assert [args[1] for _, args in client.messages()] == ["Pergunta", "Destino"]
        assert engine.conversations.get(JID).stepIndex == 2

    async def test_delay_before_and_typing_indicator(self, make_engine, client, sleeper):
        funnels = {
            "F": {
                "id": "F",
                "steps": [
                    {"id": "s1", "type": "text", "text": "Oi", "delayBefore": 12, "showTyping": True, "waitForReply": True}
                ],
            }
        }
        engine = make_engine(funnels)
        await engine.start_funnel(JID, "F")

        assert sleeper.calls == [12, 3]
        assert client.calls[0] == ("presence", (JID, "composing", "D01", 3))
        assert client.names()[-1] == "text"

    async def test_audio_shows_recording(self, make_engine, client, sleeper):
        engine = make_engine()
        funnel = engine.funnels.require("CS_PIX")
        funnel.steps[0].showTyping = True
        await engine.start_funnel(JID, "CS_PIX", "o-1")

        presence = [args for name, args in client.calls if name == "presence"]
        assert presence == [(JID, "recording", "D01", 5)]
        assert sleeper.calls == [5]
        name, (_, audio_url, caption, _) = client.messages()[0]
        assert name == "audio"
        assert audio_url.endswith(".mp3")
        assert caption

    async def test_send_failure_keeps_step(self, make_engine, client, events):
        engine = make_engine(WALKTHROUGH)
        client.fail_with = "instance offline"
        await engine.start_funnel(JID, "WALK")
        await engine.scheduler.drain()

        conversation = engine.conversations.get(JID)
        assert conversation.stepIndex == 0
        assert conversation.waiting_for_response is False
        assert events.types()[-1] == "ERROR"

    async def test_media_step_without_url_fails(self, make_engine, client):
        funnels = {"F": {"id": "F", "steps": [{"id": "s1", "type": "image"}]}}
        engine = make_engine(funnels)
        await engine.start_funnel(JID, "F")
        assert client.messages() == []
        assert engine.conversations.get(JID).stepIndex == 0


class TestTimeouts:
    async def test_step_timeout_moves_to_next_on_timeout(self, make_engine, client, sleeper):
        engine = make_engine(TIMEOUT)
        await engine.start_funnel(JID, "TIMEOUT")
        assert engine.scheduler.pending(step_key(JID))

        await engine.scheduler.drain()

        assert 120 in sleeper.calls
        assert [args[1] for _, args in client.messages()] == ["Responde?", "Sem resposta"]
        assert engine.conversations.get(JID).stepIndex == 2

    async def test_reply_supersedes_step_timeout(self, make_engine, client):
        engine = make_engine(TIMEOUT)
        await engine.start_funnel(JID, "TIMEOUT")
        await engine.handle_reply(JID)
        await engine.scheduler.drain()

        assert [args[1] for _, args in client.messages()] == ["Responde?", "Respondeu"]
        assert engine.conversations.get(JID).stepIndex == 1

    async def test_stale_timeout_ignored(self, make_engine):
        engine = make_engine(TIMEOUT)
        conversation = await engine.start_funnel(JID, "TIMEOUT")
        engine.scheduler.cancel_all()

        await engine.handle_step_timeout(JID, 0, "another-conversation")
        assert conversation.stepIndex == 0
        assert conversation.waiting_for_response is True

    async def test_pix_timeout_resumes_at_third_step(self, make_engine, client, sleeper, events):
        engine = make_engine()
        await engine.start_funnel(JID, "CS_PIX", "order-1")
        engine.arm_pix_timeout(JID, "order-1")
        assert engine.scheduler.pending(pix_key(JID))

        await engine.scheduler.drain()

        assert 420 in sleeper.calls
        conversation = engine.conversations.get(JID)
        assert conversation.stepIndex == 2
        assert conversation.waiting_for_response is True
        assert "PIX_TIMEOUT" in events.types()
        assert client.messages()[-1][0] == "audio"

    async def test_pix_timeout_ignores_other_order(self, make_engine, client):
        engine = make_engine()
        await engine.start_funnel(JID, "CS_PIX", "order-1")
        sent = len(client.calls)

        await engine.handle_pix_timeout(JID, "order-2")

        assert engine.conversations.get(JID).stepIndex == 0
        assert len(client.calls) == sent

    async def test_cancel_pix_timeout(self, make_engine):
        engine = make_engine()
        await engine.start_funnel(JID, "CS_PIX", "order-1")
        engine.arm_pix_timeout(JID, "order-1")
        assert engine.cancel_pix_timeout(JID) is True
        assert not engine.scheduler.pending(pix_key(JID))
