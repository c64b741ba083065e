from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from propchat.core.logging import get_logger
from propchat.realtime.events import (
    ClientUnreadCounts,
    ClientUnreadNode,
    HierarchicalUnreadCounts,
    PropertyUnreadCounts,
    PropertyUnreadNode,
    ServerEvent,
)
from propchat.realtime.hub import ConnectionHub, agent_group, client_group, property_group
from propchat.realtime.store import AgentUnreadEntry, DataStore

logger = get_logger("propchat.realtime.badges")

BRANCH_PROPERTY = "property"
BRANCH_AGENT = "agent"
BRANCH_CLIENT = "client"


@dataclass(slots=True)
class BadgeReport:
    conversation_id: str
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


def build_hierarchy(entries: list[AgentUnreadEntry]) -> HierarchicalUnreadCounts:
    """Group an agent's conversations by client, keeping first-seen client order."""
    clients: dict[str, ClientUnreadNode] = {}
    for entry in entries:
        node = clients.get(entry.client_id)
        if node is None:
            node = ClientUnreadNode(
                client_id=entry.client_id,
                client_name=entry.client_name,
                unread_count=0,
            )
            clients[entry.client_id] = node
        node.properties.append(
            PropertyUnreadNode(
                property_id=entry.property_id,
                address=entry.address,
                unread_count=entry.unread_count,
            )
        )
        node.unread_count += entry.unread_count
    ordered = list(clients.values())
    return HierarchicalUnreadCounts(
        total_unread=sum(node.unread_count for node in ordered),
        clients=ordered,
    )


class BadgeReconciler:
    """Recomputes the three unread views from message read state and broadcasts them."""

    def __init__(self, store: DataStore, hub: ConnectionHub) -> None:
        self._store = store
        self._hub = hub

    async def property_counts(self, conversation_id: str, property_id: str) -> PropertyUnreadCounts:
        unread = await self._store.property_unread(conversation_id)
        return PropertyUnreadCounts(
            property_id=property_id,
            agent_unread_count=unread.agent_unread,
            client_unread_count=unread.client_unread,
        )

    async def agent_hierarchy(self, agent_id: str) -> HierarchicalUnreadCounts:
        return build_hierarchy(await self._store.agent_unread_entries(agent_id))

    async def client_counts(self, client_id: str) -> ClientUnreadCounts:
        return ClientUnreadCounts(counts=await self._store.client_unread_by_property(client_id))

    async def reconcile(
        self,
        *,
        conversation_id: str,
        property_id: str,
        agent_id: str,
        client_id: str,
    ) -> BadgeReport:
        report = BadgeReport(conversation_id=conversation_id)

        async def _property() -> None:
            counts = await self.property_counts(conversation_id, property_id)
            await self._hub.emit_to(
                property_group(property_id),
                ServerEvent.UNREAD_COUNTS_UPDATED,
                counts.to_wire(),
            )

        async def _agent() -> None:
            hierarchy = await self.agent_hierarchy(agent_id)
            await self._hub.emit_to(
                agent_group(agent_id),
                ServerEvent.HIERARCHICAL_UNREAD_COUNTS_UPDATED,
                hierarchy.to_wire(),
            )

        async def _client() -> None:
            counts = await self.client_counts(client_id)
            await self._hub.emit_to(
                client_group(client_id),
                ServerEvent.CLIENT_UNREAD_COUNTS_UPDATED,
                counts.to_wire(),
            )

        branches: tuple[tuple[str, Callable[[], Awaitable[None]]], ...] = (
            (BRANCH_PROPERTY, _property),
            (BRANCH_AGENT, _agent),
            (BRANCH_CLIENT, _client),
        )
        for name, branch in branches:
            try:
                await branch()
            except Exception:
                logger.exception(
                    "realtime.badges.branch_failed",
                    branch=name,
                    conversation_id=conversation_id,
                )
                report.failed.append(name)
            else:
                report.succeeded.append(name)

        logger.debug(
            "realtime.badges.reconciled",
            conversation_id=conversation_id,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report
