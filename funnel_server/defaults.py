"""Funnels installed when no ``funnels.json`` exists yet."""

from __future__ import annotations

import copy
from typing import Any, Dict

MEDIA_BASE = "https://media.example.com/funnels"
MEMBERS_URL = "https://members.example.com/"
SUPPORT_URL = "https://t.me/support_team"

_DEFAULT_FUNNELS: Dict[str, Dict[str, Any]] = {
    "CS_APROVADA": {
        "id": "CS_APROVADA",
        "name": "CS - Compra Aprovada",
        "steps": [
            {
                "id": "step_1",
                "type": "text",
                "text": "Oi! Tudo bem? Aqui é a equipe de atendimento. Posso te enviar agora o seu acesso? 😍",
                "waitForReply": True,
            },
            {
                "id": "step_2",
                "type": "video+text",
                "text": (
                    "Seu acesso está pronto! 😍\n\n"
                    "Pra entrar é bem simples, clique no link abaixo 👇🏻\n\n"
                    f"{MEMBERS_URL}\n\n"
                    "E entre usando seu e-mail de compra."
                ),
                "mediaUrl": f"{MEDIA_BASE}/boas-vindas.mp4",
                "waitForReply": True,
            },
            {"id": "step_3", "type": "delay", "delaySeconds": 780, "waitForReply": False},
            {"id": "step_4", "type": "text", "text": "Conseguiu acessar? ❤️", "waitForReply": True},
            {
                "id": "step_5",
                "type": "text",
                "text": f"Se ainda não conseguiu, clica aqui que o suporte te ajuda agora 👇🏻\n\n{SUPPORT_URL}",
                "waitForReply": True,
                "delayBefore": 12,
            },
            {"id": "step_6", "type": "delay", "delaySeconds": 220, "waitForReply": False},
            {
                "id": "step_7",
                "type": "image+text",
                "text": f"Temos um bônus liberado pra você! Só clicar no link 👇🏻\n\n{MEMBERS_URL}bonus",
                "mediaUrl": f"{MEDIA_BASE}/bonus.jpg",
                "waitForReply": False,
                "delayBefore": 10,
            },
        ],
    },
    "CS_PIX": {
        "id": "CS_PIX",
        "name": "CS - PIX Pendente",
        "steps": [
            {
                "id": "step_1",
                "type": "audio",
                "text": "😍 Oi! Te chamei pra finalizar a sua inscrição. Posso te ajudar agora?",
                "mediaUrl": f"{MEDIA_BASE}/ola.mp3",
                "waitForReply": True,
            },
            {
                "id": "step_2",
                "type": "image+text",
                "text": (
                    "Vi no sistema que você gerou o Pix mas ainda não pagou...\n\n"
                    "Vou te enviar o link para finalizar o pagamento 👇🏻\n\n"
                    "https://checkout.example.com/pix"
                ),
                "mediaUrl": f"{MEDIA_BASE}/pix.png",
                "waitForReply": False,
                "showTyping": True,
                "delayBefore": 8,
            },
            {
                "id": "step_3",
                "type": "audio",
                "text": "Assim que finalizar, só me enviar o comprovante 😘",
                "mediaUrl": f"{MEDIA_BASE}/comprovante.mp3",
                "waitForReply": True,
            },
            {"id": "step_4", "type": "delay", "delaySeconds": 590, "waitForReply": False},
            {
                "id": "step_5",
                "type": "image+text",
                "text": (
                    "Vi que ainda não pagou o valor...\n\n"
                    "Mesmo assim vamos te liberar um acesso gratuito 👇🏻\n\n"
                    f"{MEMBERS_URL}"
                ),
                "mediaUrl": f"{MEDIA_BASE}/acesso-gratuito.jpg",
                "waitForReply": True,
            },
            {"id": "step_6", "type": "delay", "delaySeconds": 450, "waitForReply": False},
            {"id": "step_7", "type": "text", "text": "Conseguiu acessar? 🥰", "waitForReply": True},
            {
                "id": "step_8",
                "type": "text",
                "text": f"Se ainda não conseguiu, clica aqui que o suporte te ajuda agora 👇🏻\n\n{SUPPORT_URL}",
                "waitForReply": False,
                "delayBefore": 9,
            },
        ],
    },
    "FAB_APROVADA": {
        "id": "FAB_APROVADA",
        "name": "FAB - Compra Aprovada",
        "steps": [
            {
                "id": "step_1",
                "type": "text",
                "text": "Parabéns! Seu pedido FAB foi aprovado. Prepare-se para a transformação!",
                "waitForReply": True,
            }
        ],
    },
    "FAB_PIX": {
        "id": "FAB_PIX",
        "name": "FAB - PIX Pendente",
        "steps": [
            {
                "id": "step_1",
                "type": "text",
                "text": "Seu PIX FAB foi gerado! Aguardamos o pagamento para iniciar sua transformação.",
                "waitForReply": True,
            }
        ],
    },
}


def default_funnels() -> Dict[str, Dict[str, Any]]:
    return copy.deepcopy(_DEFAULT_FUNNELS)
