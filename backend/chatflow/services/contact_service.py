# /chatflow/services/contact_service.py

import re
import logging
from typing import Any, Dict, List, Optional

from chatflow.models.execution import ExecutionContext, SubjectRecord
from chatflow.models.flow import VariableScope
from chatflow.services.store import ExecutionStore

# Contact sharing links a chat identity to a known subject record. Phone
# numbers arrive in every format imaginable, so matching runs over a set of
# normalized variants instead of one canonical form.

logger = logging.getLogger(__name__)


def normalize_phone(phone: Any) -> str:
    """
    Strips everything except digits, keeping a leading '+'.
    Returns an empty string for empty or non-string input.
    """
    if not phone or not isinstance(phone, (str, int)):
        return ""
    raw = str(phone).strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return ""
    return f"+{digits}" if raw.startswith("+") else digits


def phone_variants(phone: Any) -> List[str]:
    """
    All the forms a stored phone number might take.

    Covers: as given, digits only, '+digits', the last 10 digits, the 8/7
    trunk-prefix swap for 11-digit numbers, and a leading country code 1 for
    bare 10-digit numbers.
    """
    normalized = normalize_phone(phone)
    if not normalized:
        return []
    digits = normalized.lstrip("+")

    variants = [normalized, digits, f"+{digits}"]
    if len(digits) > 10:
        variants.append(digits[-10:])
    if len(digits) == 11 and digits.startswith("8"):
        variants += [f"+7{digits[1:]}", f"7{digits[1:]}"]
    elif len(digits) == 11 and digits.startswith("7"):
        variants += [f"8{digits[1:]}"]
    elif len(digits) == 10:
        variants += [f"1{digits}", f"+1{digits}"]

    # Ordered de-duplication
    return list(dict.fromkeys(variants))


def extract_contact(payload: Any) -> Dict[str, Any]:
    """Accepts a shared-contact dict or a bare phone string."""
    if isinstance(payload, dict):
        contact = dict(payload)
        if "phone_number" not in contact and "phone" in contact:
            contact["phone_number"] = contact["phone"]
        return contact
    return {"phone_number": payload}


class ContactService:
    """Matches shared contacts against known subjects and merges identities."""

    def __init__(self, store: ExecutionStore):
        self.store = store

    async def match_subject(self, project_id: str, phone: Any,
                            platform_user_id: Optional[str] = None) -> Optional[SubjectRecord]:
        """
        Finds the subject a contact belongs to: by phone variants first, then
        by platform user id. A phone match without a platform id is merged by
        attaching the platform id to it.
        """
        variants = phone_variants(phone)
        record = await self.store.find_subject_by_phone(project_id, variants) if variants else None

        if record is not None:
            if platform_user_id and not record.platform_user_id:
                record.platform_user_id = platform_user_id
                await self.store.save_subject(record)
                logger.info(f"Linked platform user {platform_user_id} to subject {record.id}")
            return record

        if platform_user_id:
            record = await self.store.find_subject_by_platform_id(project_id, platform_user_id)
            if record is not None and not record.phone and variants:
                record.phone = variants[0]
                await self.store.save_subject(record)
        return record

    async def link_contact(self, context: ExecutionContext, variables, payload: Any) -> Optional[SubjectRecord]:
        """
        Records the outcome of a contact share in the context's variables:
        session 'contact', 'contact_phone', 'contact_match', 'matched_subject_id'
        and persistent 'linked_subject_id' when a subject matched.
        """
        contact = extract_contact(payload)
        phone = normalize_phone(contact.get("phone_number"))
        platform_user_id = contact.get("user_id") or context.subject.user_id
        if platform_user_id is not None:
            platform_user_id = str(platform_user_id)

        record = await self.match_subject(context.project_id, phone, platform_user_id)

        await variables.set("contact", contact)
        await variables.set("contact_phone", phone)
        await variables.set("contact_match", "matched" if record else "not_found")
        await variables.set("matched_subject_id", record.id if record else None)
        if record is not None:
            await variables.set("linked_subject_id", record.id, VariableScope.PERSISTENT)
        return record
