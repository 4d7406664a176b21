"""JSON file persistence for funnels and conversations.

Both repositories keep their records in memory and flush a full snapshot to
disk after every mutation, mirroring how the admin UI edits whole documents.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from .defaults import default_funnels
from .events import EventLog
from .models import Conversation, Funnel, FunnelNotFoundError


class StorageError(RuntimeError):
    pass


class JsonFileStore:
    """Reads and writes one JSON object to a file."""

    def __init__(self, data_path: Path) -> None:
        self.data_path = data_path

    def exists(self) -> bool:
        return self.data_path.exists()

    def read(self) -> Dict[str, Any]:
        try:
            with self.data_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise StorageError(f"{self.data_path.name} is not valid JSON: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise StorageError(f"{self.data_path.name} is not valid UTF-8: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"{self.data_path.name} must contain a JSON object")
        return data

    def write(self, data: Dict[str, Any]) -> None:
        self.data_path.parent.mkdir(parents=True, exist_ok=True)
        with self.data_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=2)


class FunnelRepository:
    def __init__(self, store: JsonFileStore, events: EventLog) -> None:
        self.store = store
        self.events = events
        self._funnels: Dict[str, Funnel] = {}

    def load(self) -> int:
        """Load funnels from disk, installing the defaults when the file is unusable."""

        try:
            raw = self.store.read()
            self._funnels = parse_funnels(raw)
        except (OSError, StorageError, ValidationError) as exc:
            self.events.add("WARNING", "Nenhum funil encontrado, usando padrão", {"reason": str(exc)})
            self.reset_defaults()
            self.save()
            self.events.add("SYSTEM", "Funis padrão carregados e salvos")
            return len(self._funnels)
        self.events.add("SYSTEM", f"{len(self._funnels)} funis carregados")
        return len(self._funnels)

    def reset_defaults(self) -> None:
        self._funnels = parse_funnels(default_funnels())

    def get(self, funnel_id: str) -> Optional[Funnel]:
        return self._funnels.get(funnel_id)

    def require(self, funnel_id: str) -> Funnel:
        funnel = self._funnels.get(funnel_id)
        if funnel is None:
            raise FunnelNotFoundError(funnel_id)
        return funnel

    def list(self) -> List[Funnel]:
        return list(self._funnels.values())

    def upsert(self, funnel: Funnel) -> Funnel:
        self._funnels[funnel.id] = funnel
        return funnel

    def replace_all(self, funnels: Dict[str, Funnel]) -> None:
        self._funnels = dict(funnels)

    def snapshot(self) -> Dict[str, Any]:
        return {funnel_id: funnel.to_dict() for funnel_id, funnel in self._funnels.items()}

    def save(self) -> bool:
        return _write_snapshot(self.store, self.snapshot(), self.events, "Erro ao salvar funis")

    async def persist(self) -> bool:
        data = self.snapshot()
        return await run_in_threadpool(_write_snapshot, self.store, data, self.events, "Erro ao salvar funis")

    def __len__(self) -> int:
        return len(self._funnels)

    def __contains__(self, funnel_id: object) -> bool:
        return funnel_id in self._funnels


class ConversationRepository:
    def __init__(self, store: JsonFileStore, events: EventLog) -> None:
        self.store = store
        self.events = events
        self._conversations: Dict[str, Conversation] = {}

    def load(self) -> int:
        if not self.store.exists():
            self.events.add("INFO", "Nenhuma conversa salva encontrada")
            return 0
        try:
            raw = self.store.read()
            self._conversations = {
                remote_jid: Conversation.from_dict({**payload, "remoteJid": remote_jid})
                for remote_jid, payload in raw.items()
            }
        except (OSError, StorageError, TypeError, AttributeError) as exc:
            self.events.add("WARNING", "Conversas salvas ilegíveis, iniciando vazio", {"reason": str(exc)})
            self._conversations = {}
            return 0
        self.events.add("SYSTEM", f"{len(self._conversations)} conversas carregadas")
        return len(self._conversations)

    def get(self, remote_jid: str) -> Optional[Conversation]:
        return self._conversations.get(remote_jid)

    def put(self, conversation: Conversation) -> None:
        self._conversations[conversation.remoteJid] = conversation

    def delete(self, remote_jid: str) -> Optional[Conversation]:
        return self._conversations.pop(remote_jid, None)

    def list(self) -> List[Conversation]:
        return list(self._conversations.values())

    def snapshot(self) -> Dict[str, Any]:
        return {remote_jid: conv.to_dict() for remote_jid, conv in self._conversations.items()}

    def save(self) -> bool:
        return _write_snapshot(self.store, self.snapshot(), self.events, "Erro ao salvar conversas")

    async def persist(self) -> bool:
        data = self.snapshot()
        return await run_in_threadpool(_write_snapshot, self.store, data, self.events, "Erro ao salvar conversas")

    def __iter__(self) -> Iterator[Conversation]:
        return iter(self.list())

    def __len__(self) -> int:
        return len(self._conversations)


def parse_funnels(raw: Dict[str, Any]) -> Dict[str, Funnel]:
    funnels: Dict[str, Funnel] = {}
    for funnel_id, payload in raw.items():
        if isinstance(payload, dict):
            payload = {**payload, "id": funnel_id}
        funnels[funnel_id] = Funnel.model_validate(payload)
    return funnels


def _write_snapshot(store: JsonFileStore, data: Dict[str, Any], events: EventLog, failure: str) -> bool:
    try:
        store.write(data)
    except OSError as exc:
        events.add("ERROR", failure, {"reason": str(exc)})
        return False
    return True
