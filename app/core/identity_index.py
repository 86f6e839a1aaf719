"""
Identity resolution index: hashed email ↔ hashed phone cross-reference.

A link exists when both identifiers were seen together on one transaction.
Lets an email-keyed touchpoint chain pick up phone-keyed touches (SMS) and
the reverse. Loaded once per run, read-only afterwards.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from app.core.identity_hash import INVALID_HASH, hash_email, hash_phone
from app.core.transactions import TransactionRecord


@dataclass(frozen=True)
class IdentityKeys:
    direct: frozenset[str]   # the transaction's own hashed identifiers
    linked: frozenset[str]   # reachable only through an identity link


class IdentityIndex:
    def __init__(self, links: Iterable[tuple[str, str]] = ()):
        self._email_to_phones: dict[str, set[str]] = {}
        self._phone_to_emails: dict[str, set[str]] = {}
        for email_hash, phone_hash in links:
            if not email_hash or not phone_hash:
                continue
            self._email_to_phones.setdefault(email_hash, set()).add(phone_hash)
            self._phone_to_emails.setdefault(phone_hash, set()).add(email_hash)

    @classmethod
    def empty(cls) -> "IdentityIndex":
        return cls()

    def __len__(self) -> int:
        return sum(len(phones) for phones in self._email_to_phones.values())

    def phones_for(self, email_hash: str) -> set[str]:
        return set(self._email_to_phones.get(email_hash, ()))

    def emails_for(self, phone_hash: str) -> set[str]:
        return set(self._phone_to_emails.get(phone_hash, ()))

    def keys_for(self, txn: TransactionRecord) -> IdentityKeys:
        direct: set[str] = set()
        email_hash = hash_email(txn.donor_email)
        phone_hash = hash_phone(txn.donor_phone)
        if email_hash != INVALID_HASH:
            direct.add(email_hash)
        if phone_hash != INVALID_HASH:
            direct.add(phone_hash)

        linked: set[str] = set()
        if email_hash != INVALID_HASH:
            linked |= self.phones_for(email_hash)
        if phone_hash != INVALID_HASH:
            linked |= self.emails_for(phone_hash)

        return IdentityKeys(direct=frozenset(direct), linked=frozenset(linked - direct))
