"""
Per-scrape identity map: participant identifier -> canonical phone digits.

Group participants may be reported under a phone-bearing identifier
("94772147755@c.us") or an opaque linked identifier ("162474452119805@lid").
Messages can be authored under either, so the map records every scheme seen
for a participant against the same phone number. The map lives for one
scrape only; identifiers may be reassigned between sessions.
"""

import logging
import re
from typing import Optional

from harvester.source import GroupSnapshot, Participant, SourceClient

logger = logging.getLogger(__name__)

PHONE_SUFFIXES = ("@c.us", "@s.whatsapp.net")
PHONE_SHAPE = re.compile(r"^\d{10,15}$")

IdentityMap = dict[str, str]


def local_part(identifier: str) -> str:
    return identifier.split("@", 1)[0]


def is_phone_identifier(identifier: Optional[str]) -> bool:
    return bool(identifier) and identifier.endswith(PHONE_SUFFIXES)


def phone_from_identifier(identifier: Optional[str]) -> Optional[str]:
    """Digits of a phone-bearing identifier, None for any other scheme."""
    if not is_phone_identifier(identifier):
        return None
    digits = local_part(identifier)
    return digits if digits.isdigit() else None


async def build_identity_map(snapshot: GroupSnapshot, source: SourceClient) -> IdentityMap:
    """
    Map every identifier observed for the snapshot's participants to phone digits.

    Never raises: a participant whose identity cannot be resolved is degraded
    or left out, and the scrape goes on.
    """
    identity_map: IdentityMap = {}
    for participant in snapshot.participants:
        try:
            await _map_participant(participant, source, identity_map)
        except Exception as e:
            logger.warning(f"Identity resolution degraded for participant {participant.id}: {e}")

    logger.info(f"Built identity map with {len(identity_map)} entries for {snapshot.id}")
    return identity_map


async def _map_participant(participant: Participant, source: SourceClient, identity_map: IdentityMap) -> None:
    own_phone = phone_from_identifier(participant.id)
    linked_phone = phone_from_identifier(participant.phone_identifier)

    if own_phone:
        identity_map[participant.id] = own_phone
        # The contact record exposes the linked identifier messages may be authored under
        try:
            contact = await source.resolve_contact(participant.id)
        except Exception as e:
            logger.debug(f"Contact lookup failed for {participant.id}: {e}")
            return
        if contact.id and contact.id != participant.id:
            identity_map[contact.id] = own_phone
        return

    if linked_phone:
        identity_map[participant.id] = linked_phone
        return

    # Opaque identifier without a linked phone: ask the source
    try:
        contact = await source.resolve_contact(participant.id)
    except Exception as e:
        _map_to_self(participant.id, identity_map, f"contact lookup failed ({e})")
        return

    phone = phone_from_identifier(contact.id) or _digits(contact.number)
    if phone:
        identity_map[participant.id] = phone
    else:
        _map_to_self(participant.id, identity_map, "no phone number linked")


def _map_to_self(identifier: str, identity_map: IdentityMap, reason: str) -> None:
    """Degraded entry: the identifier's own local part, kept only when it is shaped like a phone number."""
    candidate = local_part(identifier)
    if PHONE_SHAPE.match(candidate):
        identity_map[identifier] = candidate
        logger.warning(f"Identity resolution degraded for {identifier}: {reason}, mapped to itself")
    else:
        logger.warning(f"Identity resolution degraded for {identifier}: {reason}, left unmapped")


def _digits(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    digits = "".join(ch for ch in value if ch.isdigit())
    return digits or None
