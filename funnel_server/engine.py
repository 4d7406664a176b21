"""Funnel state machine: walks each conversation through its funnel steps.

A conversation advances in three ways:

* automatically, once a step that does not wait for a reply has been sent;
* when the customer replies to a step flagged ``waitForReply``;
* when a timer fires (``timeoutMinutes`` on a step, or the PIX payment timeout).

Timers run on :class:`~funnel_server.scheduler.TaskScheduler` under the keys
``step:<jid>`` and ``pix:<jid>``.  Every deferred callback carries the
``conversationId`` it was armed for and is ignored once the conversation has
been replaced by a newer funnel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Sequence
from uuid import uuid4

from fastapi.concurrency import run_in_threadpool

from .evolution import EvolutionClient, SendResult
from .events import EventLog, utc_now_iso
from .models import Conversation, FunnelStep
from .scheduler import TaskScheduler
from .storage import ConversationRepository, FunnelRepository

logger = logging.getLogger(__name__)

PIX_RESUME_STEP = 2
DEFAULT_DELAY_SECONDS = 10
DEFAULT_TYPING_SECONDS = 3
MEDIA_TYPES = {"image", "image+text", "video", "video+text", "audio"}

Sleep = Callable[[float], Awaitable[None]]


def step_key(remote_jid: str) -> str:
    return f"step:{remote_jid}"


def pix_key(remote_jid: str) -> str:
    return f"pix:{remote_jid}"


def presence_for(step: FunnelStep) -> tuple:
    """Presence indicator and its duration in seconds shown before ``step``."""

    if step.type == "audio":
        return "recording", 5
    return "composing", 3


class FunnelEngine:
    def __init__(
        self,
        funnels: FunnelRepository,
        conversations: ConversationRepository,
        client: EvolutionClient,
        events: EventLog,
        scheduler: TaskScheduler,
        instances: Sequence[str],
        step_gap: float = 1.0,
        pix_timeout: float = 7 * 60,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not instances:
            raise ValueError("At least one Evolution instance must be configured")
        self.funnels = funnels
        self.conversations = conversations
        self.client = client
        self.events = events
        self.scheduler = scheduler
        self.instances = list(instances)
        self.step_gap = step_gap
        self.pix_timeout = pix_timeout
        self._sleep = sleep
        self.sticky: Dict[str, str] = {}
        self._round_robin = 0

    # ------------------------------------------------------------------
    # Instance assignment
    # ------------------------------------------------------------------

    def rebuild_sticky(self) -> int:
        for conversation in self.conversations:
            self.sticky.setdefault(conversation.remoteJid, conversation.instanceName)
        return len(self.sticky)

    def assign_instance(self, remote_jid: str) -> str:
        instance_name = self.sticky.get(remote_jid)
        if instance_name:
            self.events.add("STICKY_INSTANCE", f"Usando sticky instance {instance_name}")
            return instance_name
        instance_name = self.instances[self._round_robin % len(self.instances)]
        self._round_robin += 1
        self.sticky[remote_jid] = instance_name
        self.events.add("INSTANCE_ASSIGNED", f"Nova conversa atribuída a {instance_name}")
        return instance_name

    # ------------------------------------------------------------------
    # Funnel lifecycle
    # ------------------------------------------------------------------

    async def start_funnel(
        self,
        remote_jid: str,
        funnel_id: str,
        order_code: Optional[str] = None,
        customer_name: Optional[str] = None,
        product_type: Optional[str] = None,
        total_price=None,
    ) -> Conversation:
        instance_name = self.assign_instance(remote_jid)
        self.scheduler.cancel(step_key(remote_jid))
        conversation = Conversation(
            remoteJid=remote_jid,
            funnelId=funnel_id,
            instanceName=instance_name,
            orderCode=order_code,
            customerName=customer_name,
            productType=product_type,
            totalPrice=total_price,
        )
        self.conversations.put(conversation)
        await self.conversations.persist()
        self.events.add(
            "FUNNEL_START",
            f"Iniciando funil {funnel_id} para {customer_name}",
            {"orderCode": order_code, "instanceName": instance_name},
        )
        await self.send_step(remote_jid)
        return conversation

    async def send_step(self, remote_jid: str, conversation_id: Optional[str] = None) -> None:
        conversation = self.conversations.get(remote_jid)
        if conversation is None:
            self.events.add("ERROR", "Conversa não encontrada", {"remoteJid": remote_jid})
            return
        if conversation_id is not None and conversation.conversationId != conversation_id:
            logger.debug("Skipping stale step for %s", remote_jid)
            return

        funnel = self.funnels.get(conversation.funnelId)
        if funnel is None:
            self.events.add("ERROR", "Funil não encontrado", {"funnelId": conversation.funnelId})
            return

        index = conversation.stepIndex
        if index >= len(funnel.steps):
            self.events.add(
                "FUNNEL_COMPLETE",
                f"Funil {conversation.funnelId} completo para {conversation.customerName}",
            )
            self.conversations.delete(remote_jid)
            await self.conversations.persist()
            return

        step = funnel.steps[index]
        instance_name = conversation.instanceName
        self.events.add(
            "STEP_SEND",
            f"Enviando passo {index + 1}/{len(funnel.steps)} do funil {conversation.funnelId}",
            {"stepType": step.type, "instanceName": instance_name},
        )

        if step.delayBefore:
            self.events.add("STEP_DELAY_BEFORE", f"Aguardando {step.delayBefore}s antes do passo")
            await self._sleep(step.delayBefore)

        if step.showTyping:
            presence, duration = presence_for(step)
            self.events.add("PRESENCE_INDICATOR", f'Mostrando "{presence}" por {duration}s')
            await self._send_presence(remote_jid, presence, instance_name, duration)
            await self._sleep(duration)

        if not self._is_current(conversation, index):
            logger.debug("Conversation %s moved on while step %s was pending", remote_jid, index)
            return

        gap = self.step_gap
        if step.type == "delay":
            delay = step.delaySeconds or DEFAULT_DELAY_SECONDS
            gap = delay + self.step_gap
            self.events.add("STEP_DELAY_PURE", f"Executando delay puro de {delay}s")
            result = SendResult(ok=True)
        elif step.type == "typing":
            seconds = step.typingSeconds or DEFAULT_TYPING_SECONDS
            self.events.add("STEP_TYPING_PURE", f"Mostrando digitando puro por {seconds}s")
            await self._send_presence(remote_jid, "composing", instance_name, seconds)
            await self._sleep(seconds)
            result = SendResult(ok=True)
        else:
            result = await self.send_message(remote_jid, step.type, step.text, step.mediaUrl, instance_name)

        if not result.ok:
            self.events.add("ERROR", "Falha ao enviar passo", {"step": index, "error": result.error})
            return
        if not self._is_current(conversation, index):
            return

        conversation.lastSystemMessage = utc_now_iso()
        if step.waitForReply and step.is_message:
            conversation.waiting_for_response = True
            self.events.add("STEP_WAITING", f"Aguardando resposta do cliente no passo {index + 1}")
            await self.conversations.persist()
            if step.timeoutMinutes:
                conversation_id = conversation.conversationId
                self.scheduler.schedule(
                    step_key(remote_jid),
                    step.timeoutMinutes * 60,
                    lambda: self.handle_step_timeout(remote_jid, index, conversation_id),
                )
            return

        conversation.stepIndex = index + 1
        conversation.waiting_for_response = False
        await self.conversations.persist()
        self._schedule_step(remote_jid, conversation.conversationId, gap)

    async def handle_reply(self, remote_jid: str) -> bool:
        """Advance a conversation that is waiting for the customer. Returns whether it acted."""

        conversation = self.conversations.get(remote_jid)
        if conversation is None or not conversation.waiting_for_response:
            return False

        index = conversation.stepIndex
        self.events.add("CLIENT_REPLY", f"Cliente respondeu no passo {index + 1}")
        step = self._step_at(conversation.funnelId, index)
        if step is not None and step.nextOnReply is not None:
            conversation.stepIndex = step.nextOnReply
        else:
            conversation.stepIndex = index + 1
        conversation.waiting_for_response = False
        await self.conversations.persist()
        self._schedule_step(remote_jid, conversation.conversationId, self.step_gap)
        return True

    async def handle_step_timeout(self, remote_jid: str, step_index: int, conversation_id: str) -> None:
        conversation = self.conversations.get(remote_jid)
        if (
            conversation is None
            or conversation.conversationId != conversation_id
            or conversation.stepIndex != step_index
            or not conversation.waiting_for_response
        ):
            return
        step = self._step_at(conversation.funnelId, step_index)
        if step is None:
            return
        if step.nextOnTimeout is not None:
            conversation.stepIndex = step.nextOnTimeout
        else:
            conversation.stepIndex = step_index + 1
        conversation.waiting_for_response = False
        self.events.add("STEP_TIMEOUT", f"Tempo esgotado no passo {step_index + 1}", {"remoteJid": remote_jid})
        await self.conversations.persist()
        await self.send_step(remote_jid, conversation_id)

    # ------------------------------------------------------------------
    # PIX payment timeout
    # ------------------------------------------------------------------

    def arm_pix_timeout(self, remote_jid: str, order_code: Optional[str]) -> None:
        self.scheduler.schedule(
            pix_key(remote_jid),
            self.pix_timeout,
            lambda: self.handle_pix_timeout(remote_jid, order_code),
        )

    def cancel_pix_timeout(self, remote_jid: str) -> bool:
        return self.scheduler.cancel(pix_key(remote_jid))

    async def handle_pix_timeout(self, remote_jid: str, order_code: Optional[str]) -> None:
        conversation = self.conversations.get(remote_jid)
        if conversation is None or conversation.orderCode != order_code:
            return
        funnel = self.funnels.get(conversation.funnelId)
        if funnel is None or len(funnel.steps) <= PIX_RESUME_STEP:
            return
        self.scheduler.cancel(step_key(remote_jid))
        conversation.stepIndex = PIX_RESUME_STEP
        conversation.waiting_for_response = False
        self.events.add("PIX_TIMEOUT", "PIX não pago, avançando funil", {"orderCode": order_code})
        await self.conversations.persist()
        await self.send_step(remote_jid, conversation.conversationId)

    # ------------------------------------------------------------------
    # Outbound messages
    # ------------------------------------------------------------------

    async def send_message(
        self,
        remote_jid: str,
        step_type: str,
        text: Optional[str],
        media_url: Optional[str],
        instance_name: str,
    ) -> SendResult:
        client_message_id = str(uuid4())
        if step_type in MEDIA_TYPES and not media_url:
            return SendResult(ok=False, error=f"Passo {step_type} sem mediaUrl")

        client = self.client
        if step_type == "text":
            call, args = client.send_text, (remote_jid, text or "", instance_name)
        elif step_type == "image":
            call, args = client.send_image, (remote_jid, media_url, "", instance_name)
        elif step_type == "image+text":
            call, args = client.send_image, (remote_jid, media_url, text, instance_name)
        elif step_type == "video":
            call, args = client.send_video, (remote_jid, media_url, "", instance_name)
        elif step_type == "video+text":
            call, args = client.send_video, (remote_jid, media_url, text, instance_name)
        elif step_type == "audio":
            call, args = client.send_audio, (remote_jid, media_url, text, instance_name)
        else:
            return SendResult(ok=False, error=f"Tipo de passo não suportado: {step_type}")

        try:
            result = await run_in_threadpool(call, *args)
        except Exception as exc:  # pylint: disable=broad-except
            self.events.add("SEND_ERROR", f"Falha ao enviar: {exc}", {"clientMessageId": client_message_id})
            return SendResult(ok=False, error=str(exc))

        if result.ok:
            self.events.add(
                "SEND_SUCCESS",
                f"Mensagem {step_type} enviada via {instance_name}",
                {"clientMessageId": client_message_id},
            )
        return result

    async def _send_presence(self, remote_jid: str, presence: str, instance_name: str, duration: float) -> None:
        self.events.add(
            "PRESENCE_UPDATE",
            f"Enviando presença: {presence} por {duration}s",
            {"remoteJid": remote_jid, "instanceName": instance_name},
        )
        result = await run_in_threadpool(self.client.send_presence, remote_jid, presence, instance_name, duration)
        if not result.ok:
            logger.warning("Presence update failed for %s: %s", remote_jid, result.error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _schedule_step(self, remote_jid: str, conversation_id: str, delay: float) -> None:
        self.scheduler.schedule(
            step_key(remote_jid),
            delay,
            lambda: self.send_step(remote_jid, conversation_id),
        )

    def _step_at(self, funnel_id: str, index: int) -> Optional[FunnelStep]:
        funnel = self.funnels.get(funnel_id)
        if funnel is None or not 0 <= index < len(funnel.steps):
            return None
        return funnel.steps[index]

    def _is_current(self, conversation: Conversation, index: int) -> bool:
        return (
            self.conversations.get(conversation.remoteJid) is conversation
            and conversation.stepIndex == index
        )
