from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from paysync.services.sync.object_types import ObjectTypeRegistry


class EventAction(StrEnum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass(frozen=True)
class EventRoute:
    event_type: str
    object_type: str
    action: EventAction


class EventRouteTable:
    """Closed mapping of platform event types to the entity they touch.

    Built once from the registry. Only event types listed as a hard delete
    remove the entity; every other event, including state transitions named
    `*.deleted` such as `customer.subscription.deleted`, re-syncs it.
    """

    def __init__(self, routes: dict[str, EventRoute]) -> None:
        self._routes = dict(routes)

    @classmethod
    def from_registry(cls, registry: ObjectTypeRegistry) -> EventRouteTable:
        routes: dict[str, EventRoute] = {}
        for config in registry:
            hard_deletes = set(config.hard_delete_events)
            for event_type in config.event_types:
                if event_type in routes:
                    raise ValueError(
                        f"Event type {event_type!r} is routed to both "
                        f"{routes[event_type].object_type!r} and {config.name!r}."
                    )
                action = EventAction.DELETE if event_type in hard_deletes else EventAction.UPSERT
                routes[event_type] = EventRoute(
                    event_type=event_type,
                    object_type=config.name,
                    action=action,
                )
        return cls(routes)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._routes

    def __len__(self) -> int:
        return len(self._routes)

    def resolve(self, event_type: str) -> EventRoute | None:
        return self._routes.get(event_type)

    def event_types(self) -> list[str]:
        return sorted(self._routes)
