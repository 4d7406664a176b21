"""HTTP client for the Evolution API WhatsApp gateway."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from .models import jid_to_number

logger = logging.getLogger(__name__)

SEND_TEXT = "/message/sendText"
SEND_MEDIA = "/message/sendMedia"
SEND_AUDIO = "/message/sendWhatsAppAudio"
SEND_PRESENCE = "/chat/sendPresence"

AUDIO_CAPTION_PAUSE = 0.8


@dataclass
class SendResult:
    ok: bool
    data: Any = None
    error: Any = None
    status: Optional[int] = None


class EvolutionClient:
    """Blocking client; callers on the event loop wrap it in ``run_in_threadpool``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    def post(self, instance_name: str, endpoint: str, payload: Dict[str, Any]) -> SendResult:
        url = f"{self.base_url}{endpoint}/{instance_name}"
        headers = {"Content-Type": "application/json", "apikey": self.api_key}
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            response = exc.response
            status = response.status_code if response is not None else None
            return SendResult(ok=False, error=_response_body(response) or str(exc), status=status)
        except requests.exceptions.RequestException as exc:
            return SendResult(ok=False, error=str(exc))
        return SendResult(ok=True, data=_response_body(response), status=response.status_code)

    def send_presence(self, remote_jid: str, presence: str, instance_name: str, duration: float = 3) -> SendResult:
        payload = {
            "number": jid_to_number(remote_jid),
            "presence": presence,
            "delay": int(duration * 1000),
        }
        logger.debug("Presence %s for %ss on %s", presence, duration, instance_name)
        return self.post(instance_name, SEND_PRESENCE, payload)

    def send_text(self, remote_jid: str, text: str, instance_name: str) -> SendResult:
        payload = {"number": jid_to_number(remote_jid), "text": text}
        return self.post(instance_name, SEND_TEXT, payload)

    def send_media(
        self,
        remote_jid: str,
        media_type: str,
        media_url: str,
        caption: Optional[str],
        instance_name: str,
    ) -> SendResult:
        payload = {
            "number": jid_to_number(remote_jid),
            "mediatype": media_type,
            "media": media_url,
            "caption": caption or "",
        }
        return self.post(instance_name, SEND_MEDIA, payload)

    def send_image(self, remote_jid: str, image_url: str, caption: Optional[str], instance_name: str) -> SendResult:
        return self.send_media(remote_jid, "image", image_url, caption, instance_name)

    def send_video(self, remote_jid: str, video_url: str, caption: Optional[str], instance_name: str) -> SendResult:
        return self.send_media(remote_jid, "video", video_url, caption, instance_name)

    def send_audio(self, remote_jid: str, audio_url: str, caption: Optional[str], instance_name: str) -> SendResult:
        """Send audio as a recorded voice note (PTT), preceded by ``caption`` as plain text."""

        if caption and caption.strip():
            lead = self.send_text(remote_jid, caption, instance_name)
            if not lead.ok:
                logger.warning("Audio lead-in text failed on %s: %s", instance_name, lead.error)
            self._sleep(AUDIO_CAPTION_PAUSE)
        payload = {
            "number": jid_to_number(remote_jid),
            "audio": audio_url,
            "encoding": True,
        }
        return self.post(instance_name, SEND_AUDIO, payload)


def _response_body(response: Optional[requests.Response]) -> Any:
    if response is None:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
