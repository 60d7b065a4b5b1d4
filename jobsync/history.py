from __future__ import annotations

from typing import List, Optional

from .errors import GatewayError
from .schemas import AuditEvent, StageEvent
from .settings import settings
from .store import CollectionState, Generations


class StageHistory:
    """Transition log of the open application. Read-only: events are never edited."""

    def __init__(self, gateway) -> None:
        self._gateway = gateway
        self.application_id: Optional[int] = None
        self.events: List[StageEvent] = []
        self.state = CollectionState()
        self._generations = Generations()

    async def load(self, application_id: int) -> List[StageEvent]:
        if self.application_id != application_id:
            self.application_id = application_id
            self.events = []
        token = self._generations.begin("events")
        self.state.loading = True
        try:
            events = await self._gateway.list_stage_events(application_id)
        except GatewayError as e:
            if self._generations.is_current("events", token):
                self.state = CollectionState(loading=False, error=str(e))
            raise
        if self._generations.is_current("events", token) and self.application_id == application_id:
            self.events = list(events)
            self.state = CollectionState()
        return events

    async def reload(self, application_id: int) -> List[StageEvent]:
        """Reload only if ``application_id`` is the one being shown."""
        if self.application_id != application_id:
            return []
        return await self.load(application_id)

    def close(self) -> None:
        self._generations.invalidate("events")
        self.application_id = None
        self.events = []
        self.state = CollectionState()


class AuditFeed:
    def __init__(self, gateway, page_size: Optional[int] = None) -> None:
        self._gateway = gateway
        self.page_size = int(page_size or settings.dashboard.get("audit_page_size", 25))
        self.events: List[AuditEvent] = []
        self.selected: Optional[AuditEvent] = None
        self.state = CollectionState()
        self._generations = Generations()

    async def load(self, page: int = 0, size: Optional[int] = None) -> List[AuditEvent]:
        token = self._generations.begin("feed")
        self.state.loading = True
        try:
            events = await self._gateway.list_audit_events(page, size or self.page_size)
        except GatewayError as e:
            if self._generations.is_current("feed", token):
                self.state = CollectionState(loading=False, error=str(e))
            raise
        if not self._generations.is_current("feed", token):
            return events
        self.events = list(events)
        keep = self.selected and next((e for e in self.events if e.id == self.selected.id), None)
        self.selected = keep or (self.events[0] if self.events else None)
        self.state = CollectionState()
        return events

    def select(self, event_id: int) -> Optional[AuditEvent]:
        self.selected = next((e for e in self.events if e.id == event_id), self.selected)
        return self.selected

    def reset(self) -> None:
        self._generations.invalidate("feed")
        self.events = []
        self.selected = None
        self.state = CollectionState()
