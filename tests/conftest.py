import asyncio
import inspect
from typing import Any, Dict, List, Optional, Tuple

import pytest

from funnel_server.config import Settings
from funnel_server.engine import FunnelEngine
from funnel_server.events import EventLog
from funnel_server.evolution import SendResult
from funnel_server.scheduler import TaskScheduler
from funnel_server.storage import ConversationRepository, FunnelRepository, JsonFileStore, parse_funnels


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run async test functions without requiring external plugins."""
    test_function = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_function):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(test_function)
            filtered_args = {k: v for k, v in pyfuncitem.funcargs.items() if k in sig.parameters}
            loop.run_until_complete(test_function(**filtered_args))
        finally:
            loop.close()
            asyncio.set_event_loop(None)
        return True
    return None


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records durations without waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingClient:
    """Evolution client double that records every outbound call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, tuple]] = []
        self.fail_with: Optional[str] = None

    def _record(self, name: str, *args: Any) -> SendResult:
        self.calls.append((name, args))
        if self.fail_with:
            return SendResult(ok=False, error=self.fail_with, status=500)
        return SendResult(ok=True, data={"key": {"id": f"msg-{len(self.calls)}"}}, status=201)

    def send_text(self, remote_jid, text, instance_name):
        return self._record("text", remote_jid, text, instance_name)

    def send_image(self, remote_jid, image_url, caption, instance_name):
        return self._record("image", remote_jid, image_url, caption, instance_name)

    def send_video(self, remote_jid, video_url, caption, instance_name):
        return self._record("video", remote_jid, video_url, caption, instance_name)

    def send_audio(self, remote_jid, audio_url, caption, instance_name):
        return self._record("audio", remote_jid, audio_url, caption, instance_name)

    def send_presence(self, remote_jid, presence, instance_name, duration=3):
        self.calls.append(("presence", (remote_jid, presence, instance_name, duration)))
        return SendResult(ok=True)

    def names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def messages(self) -> List[Tuple[str, tuple]]:
        return [call for call in self.calls if call[0] != "presence"]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        public_dir=tmp_path / "public",
        instances="D01,D02,D03",
        evolution_base_url="http://evolution.test",
        evolution_api_key="test-key",
        step_gap_seconds=0,
        pix_timeout_seconds=420,
        kirvano_webhook_token=None,
    )


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
def events():
    return EventLog(capacity=500)


@pytest.fixture
def make_engine(settings, client, sleeper, events):
    """Build an engine over temporary storage, optionally with custom funnels."""

    def _build(funnels: Optional[Dict[str, Dict[str, Any]]] = None) -> FunnelEngine:
        funnel_repo = FunnelRepository(JsonFileStore(settings.funnels_file), events)
        if funnels is None:
            funnel_repo.reset_defaults()
        else:
            funnel_repo.replace_all(parse_funnels(funnels))
        conversation_repo = ConversationRepository(JsonFileStore(settings.conversations_file), events)
        return FunnelEngine(
            funnel_repo,
            conversation_repo,
            client,
            events,
            TaskScheduler(sleep=sleeper),
            settings.instance_names,
            step_gap=settings.step_gap_seconds,
            pix_timeout=settings.pix_timeout_seconds,
            sleep=sleeper,
        )

    return _build
