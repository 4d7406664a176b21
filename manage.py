"""Command line helpers to inspect the local funnel data files."""

from __future__ import annotations

import argparse
from typing import Iterable

from funnel_server.config import get_settings
from funnel_server.events import EventLog
from funnel_server.storage import ConversationRepository, FunnelRepository, JsonFileStore


def _funnels() -> FunnelRepository:
    settings = get_settings()
    repository = FunnelRepository(JsonFileStore(settings.funnels_file), EventLog())
    repository.load()
    return repository


def _conversations() -> ConversationRepository:
    settings = get_settings()
    repository = ConversationRepository(JsonFileStore(settings.conversations_file), EventLog())
    repository.load()
    return repository


def cmd_funnel_count(_: argparse.Namespace) -> None:
    print(f"Funis cadastrados: {len(_funnels())}")


def cmd_list_funnels(_: argparse.Namespace) -> None:
    for funnel in _funnels().list():
        print(f"[{funnel.id}] {funnel.name} · {len(funnel.steps)} passos")


def cmd_list_conversations(_: argparse.Namespace) -> None:
    conversations = _conversations().list()
    if not conversations:
        print("Nenhuma conversa ativa.")
        return
    for conv in conversations:
        status = "aguardando resposta" if conv.waiting_for_response else "em andamento"
        print(
            f"{conv.remoteJid} · {conv.funnelId} passo {conv.stepIndex + 1} · "
            f"{conv.instanceName} · {status}"
        )


def cmd_reset_funnels(_: argparse.Namespace) -> None:
    settings = get_settings()
    repository = FunnelRepository(JsonFileStore(settings.funnels_file), EventLog())
    repository.reset_defaults()
    if not repository.save():
        raise SystemExit(f"Não foi possível gravar {settings.funnels_file}")
    print(f"{len(repository)} funis padrão gravados em {settings.funnels_file}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("funnel-count", help="Mostra quantos funis estão cadastrados").set_defaults(
        func=cmd_funnel_count
    )
    subparsers.add_parser("list-funnels", help="Lista os funis e o número de passos").set_defaults(
        func=cmd_list_funnels
    )
    subparsers.add_parser("list-conversations", help="Lista as conversas em andamento").set_defaults(
        func=cmd_list_conversations
    )
    subparsers.add_parser("reset-funnels", help="Regrava os funis padrão").set_defaults(func=cmd_reset_funnels)
    return parser


def main(argv: Iterable[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
