"""
Inbound WhatsApp reply router.

Replies are one keyword, optionally followed by the reference code quoted in
the prompt being answered:

    APPROVE | DENY       family answering a time-off request
    CLAIM                caregiver taking an open shift
    CONFIRM | DECLINE    family answering a claim

Without a reference code the sender's most recent matching item is used.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Dict, Any

from .database import CoverageDatabase
from .engine import ShiftCoverageEngine
from .models import MessageDirection, REFERENCE_LENGTH

logger = logging.getLogger(__name__)

APPROVAL_COMMANDS = {"APPROVE", "DENY"}
CLAIM_COMMANDS = {"CLAIM"}
CONFIRMATION_COMMANDS = {"CONFIRM", "DECLINE"}
COMMANDS = APPROVAL_COMMANDS | CLAIM_COMMANDS | CONFIRMATION_COMMANDS

REFERENCE_PATTERN = re.compile(rf"^[A-Z0-9]{{{REFERENCE_LENGTH}}}$")


@dataclass
class ParsedReply:
    command: str
    reference_code: Optional[str] = None


def parse_reply(message_content: Optional[str]) -> Optional[ParsedReply]:
    """Normalize and parse a reply. None if it isn't a recognized command."""
    tokens = (message_content or "").upper().split()
    if not tokens or tokens[0] not in COMMANDS:
        return None

    if len(tokens) == 1:
        return ParsedReply(command=tokens[0])

    if len(tokens) == 2 and REFERENCE_PATTERN.match(tokens[1]):
        return ParsedReply(command=tokens[0], reference_code=tokens[1])

    return None


class InboundMessageRouter:
    """Turns inbound WhatsApp text into state machine transitions."""

    def __init__(self, db: CoverageDatabase, engine: ShiftCoverageEngine):
        self.db = db
        self.engine = engine

    def route(self, phone_number: str, message_content: str) -> Dict[str, Any]:
        """
        Log, resolve, parse and dispatch one inbound message.

        The raw message is logged before anything else. It is marked processed
        once a known sender's reply has been handled, including replies that
        turned out to be no-ops.
        """
        log_id = self.db.log_message(
            phone_number=phone_number,
            direction=MessageDirection.INCOMING.value,
            content=message_content or "",
            message_type="text"
        )

        user = self.db.find_user_by_phone(phone_number)
        if not user:
            logger.info(f"Inbound message from unknown number {phone_number}, dropping")
            return {"success": False, "action": "ignored", "reason": "unknown_sender"}

        parsed = parse_reply(message_content)
        if not parsed:
            logger.info(f"Unrecognized reply from {user['id']}: {message_content!r}")
            self.db.mark_message_processed(log_id, user_id=user["id"])
            return {"success": False, "action": "ignored", "reason": "unrecognized_command"}

        if parsed.command in APPROVAL_COMMANDS:
            result = self._handle_approval(user, parsed)
        elif parsed.command in CLAIM_COMMANDS:
            result = self._handle_claim(user, parsed)
        else:
            result = self._handle_confirmation(user, parsed)

        self.db.mark_message_processed(log_id, user_id=user["id"])
        result["command"] = parsed.command
        return result

    def _handle_approval(self, user: Dict[str, Any], parsed: ParsedReply) -> Dict[str, Any]:
        request = self.db.find_pending_request_for_family(user["id"], parsed.reference_code)
        if not request:
            logger.info(f"{parsed.command} from {user['id']}: no pending request "
                        f"(ref={parsed.reference_code})")
            return {"success": False, "action": "ignored", "reason": "no_pending_request"}

        return self.engine.record_family_approval(
            request["id"], parsed.command == "APPROVE", user["id"]
        )

    def _handle_claim(self, user: Dict[str, Any], parsed: ParsedReply) -> Dict[str, Any]:
        request = self.db.find_claimable_request_for_caregiver(user["id"], parsed.reference_code)
        if not request:
            logger.info(f"CLAIM from {user['id']}: nothing claimable (ref={parsed.reference_code})")
            return {"success": False, "action": "ignored", "reason": "no_claimable_request"}

        return self.engine.record_claim(request["id"], user["id"])

    def _handle_confirmation(self, user: Dict[str, Any], parsed: ParsedReply) -> Dict[str, Any]:
        claim = self.db.find_pending_claim_for_family(user["id"], parsed.reference_code)
        if not claim:
            logger.info(f"{parsed.command} from {user['id']}: no pending claim "
                        f"(ref={parsed.reference_code})")
            return {"success": False, "action": "ignored", "reason": "no_pending_claim"}

        return self.engine.record_family_confirmation(
            claim["id"], parsed.command == "CONFIRM", user["id"]
        )
