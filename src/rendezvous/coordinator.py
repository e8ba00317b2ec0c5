"""Matching and session coordination for anonymous peers.

Owns the waiting queue and the active pair table. Every operation mutates
state synchronously and returns the outbound notifications the caller must
deliver; the coordinator itself never performs I/O.

State Transitions (per connection id):
- IDLE → WAITING (join, no partner available)
- IDLE → PAIRED (join, oldest waiter popped)
- WAITING → PAIRED (another peer joins)
- PAIRED → WAITING (partner left or disconnected)
- WAITING | PAIRED → IDLE (leave or disconnect)
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from src.rendezvous.protocol import (
    ChatRelayMessage,
    MatchedMessage,
    PartnerLeftMessage,
    ServerMessage,
    SignalRelayMessage,
    WaitingMessage,
)

logger = logging.getLogger(__name__)


class ParticipantState(Enum):
    """Position of a connection id in the pairing state machine."""

    IDLE = "idle"
    WAITING = "waiting"
    PAIRED = "paired"


@dataclass(frozen=True)
class Outbound:
    """A message addressed to a single connection id."""

    target: str
    message: ServerMessage


@dataclass
class CoordinatorStats:
    """Lifetime counters for the coordinator."""

    matches: int = 0
    requeues: int = 0
    signals_relayed: int = 0
    chats_relayed: int = 0
    integrity_warnings: int = 0


class SessionCoordinator:
    """Pairs waiting peers 1:1 and relays messages between partners.

    All public operations run under a single lock, so pop-then-insert across
    the queue and the pair table is never interleaved with another operation.
    """

    def __init__(self, enforce_signal_partner: bool = False) -> None:
        """Initialize coordinator.

        Args:
            enforce_signal_partner: Drop signals whose target is not the
                sender's recorded partner
        """
        self.enforce_signal_partner = enforce_signal_partner

        self._waiting: deque[str] = deque()
        self._pairs: dict[str, str] = {}
        self._lock = threading.Lock()
        self.stats = CoordinatorStats()

    def join(self, participant_id: str) -> list[Outbound]:
        """Match the participant with the oldest waiter, or queue it.

        Args:
            participant_id: Connection id requesting a partner

        Returns:
            Notifications to deliver
        """
        with self._lock:
            if participant_id in self._pairs:
                self.stats.integrity_warnings += 1
                logger.warning(
                    "Join ignored, participant already paired",
                    extra={
                        "participant_id": participant_id,
                        "partner_id": self._pairs[participant_id],
                    },
                )
                return []

            if participant_id in self._waiting and self._waiting[0] != participant_id:
                self.stats.integrity_warnings += 1
                logger.warning(
                    "Join ignored, participant already waiting",
                    extra={"participant_id": participant_id},
                )
                return []

            if not self._waiting:
                self._waiting.append(participant_id)
                logger.info("Participant added to queue", extra={"participant_id": participant_id})
                return [Outbound(participant_id, WaitingMessage())]

            partner_id = self._waiting.popleft()
            if partner_id == participant_id:
                # Never pair a connection with itself; keep it at the head.
                self._waiting.appendleft(partner_id)
                self.stats.integrity_warnings += 1
                logger.warning(
                    "Self-pairing prevented, duplicate join from waiting participant",
                    extra={"participant_id": participant_id},
                )
                return []

            self._pairs[participant_id] = partner_id
            self._pairs[partner_id] = participant_id
            self.stats.matches += 1

            logger.info(
                "Participants paired",
                extra={"participant_id": participant_id, "partner_id": partner_id},
            )

            # Joining peer is the initiator
            return [
                Outbound(participant_id, MatchedMessage(partnerId=partner_id, initiator=True)),
                Outbound(partner_id, MatchedMessage(partnerId=participant_id, initiator=False)),
            ]

    def signal(self, sender_id: str, target_id: str | None, data: Any) -> list[Outbound]:
        """Forward an opaque signaling payload to the named target.

        Args:
            sender_id: Connection id the signal arrived on
            target_id: Caller-supplied destination id
            data: Opaque payload, forwarded unchanged

        Returns:
            Notifications to deliver
        """
        if not target_id:
            return []

        with self._lock:
            if self.enforce_signal_partner and self._pairs.get(sender_id) != target_id:
                logger.warning(
                    "Signal dropped, target is not the sender's partner",
                    extra={"participant_id": sender_id, "target_id": target_id},
                )
                return []

            self.stats.signals_relayed += 1

        logger.debug(
            "Relaying signal",
            extra={"participant_id": sender_id, "target_id": target_id},
        )
        return [Outbound(target_id, SignalRelayMessage(from_=sender_id, data=data))]

    def chat(self, sender_id: str, text: str | None) -> list[Outbound]:
        """Forward chat text to the sender's current partner.

        Args:
            sender_id: Connection id the chat arrived on
            text: Chat text

        Returns:
            Notifications to deliver (empty when unpaired or text is empty)
        """
        if not text:
            return []

        with self._lock:
            partner_id = self._pairs.get(sender_id)
            if partner_id is None:
                logger.debug("Chat ignored, sender has no partner", extra={"participant_id": sender_id})
                return []

            self.stats.chats_relayed += 1

        return [Outbound(partner_id, ChatRelayMessage(from_=sender_id, text=text))]

    def leave(self, participant_id: str, reason: str = "left") -> list[Outbound]:
        """Remove a participant and requeue its partner, if any.

        Safe to call repeatedly; only the first call for a paired participant
        notifies the partner.

        Args:
            participant_id: Connection id leaving
            reason: Why the participant left (for logging)

        Returns:
            Notifications to deliver
        """
        with self._lock:
            try:
                self._waiting.remove(participant_id)
                logger.info(
                    "Participant removed from queue",
                    extra={"participant_id": participant_id, "reason": reason},
                )
            except ValueError:
                pass

            partner_id = self._pairs.pop(participant_id, None)
            if partner_id is None:
                return []

            self._pairs.pop(partner_id, None)
            self._waiting.append(partner_id)
            self.stats.requeues += 1

            logger.info(
                "Pair dissolved, partner requeued",
                extra={
                    "participant_id": participant_id,
                    "partner_id": partner_id,
                    "reason": reason,
                },
            )

        return [
            Outbound(partner_id, PartnerLeftMessage()),
            Outbound(partner_id, WaitingMessage()),
        ]

    def disconnect(self, participant_id: str) -> list[Outbound]:
        """Handle connection loss; equivalent to leave with reason "disconnected"."""
        return self.leave(participant_id, reason="disconnected")

    def state_of(self, participant_id: str) -> ParticipantState:
        """Get the state machine position of a connection id."""
        with self._lock:
            if participant_id in self._pairs:
                return ParticipantState.PAIRED
            if participant_id in self._waiting:
                return ParticipantState.WAITING
            return ParticipantState.IDLE

    def partner_of(self, participant_id: str) -> str | None:
        """Get the current partner of a connection id, if paired."""
        with self._lock:
            return self._pairs.get(participant_id)

    def waiting_ids(self) -> list[str]:
        """Snapshot of the waiting queue, oldest first."""
        with self._lock:
            return list(self._waiting)

    def pairs(self) -> dict[str, str]:
        """Snapshot of the active pair table (both directions)."""
        with self._lock:
            return dict(self._pairs)

    def get_summary(self) -> dict[str, int]:
        """Get coordinator summary for logging/monitoring.

        Returns:
            Dictionary of metric names to values
        """
        with self._lock:
            return {
                "waiting": len(self._waiting),
                "active_pairs": len(self._pairs) // 2,
                "matches_total": self.stats.matches,
                "requeues_total": self.stats.requeues,
                "signals_relayed_total": self.stats.signals_relayed,
                "chats_relayed_total": self.stats.chats_relayed,
                "integrity_warnings_total": self.stats.integrity_warnings,
            }
