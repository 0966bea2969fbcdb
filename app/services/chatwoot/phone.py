"""JID normalization and phone-number variant rules for contact matching."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

USER_DOMAINS = ("@s.whatsapp.net", "@c.us")
GROUP_DOMAIN = "@g.us"
GROUP_PREFIX = "group:"
_UNSUPPORTED_DOMAINS = ("@broadcast", "@newsletter", "@lid")

VariantRule = Callable[[str], list[str]]


@dataclass(frozen=True)
class ChatIdentity:
    jid: str
    identifier: str
    phone: str | None
    is_group: bool

    @property
    def phone_e164(self) -> str | None:
        return f"+{self.phone}" if self.phone else None


class InvalidJidError(ValueError):
    pass


def is_group_jid(jid: str) -> bool:
    return (jid or "").endswith(GROUP_DOMAIN)


def normalize_jid(jid: str | None) -> ChatIdentity:
    """Canonicalize a WhatsApp JID.

    User JIDs lose their device suffix (``:12``) and collapse to
    ``<digits>@s.whatsapp.net``. Group JIDs keep their id and get the
    ``group:`` prefix for the Chatwoot identifier.
    """
    raw = (jid or "").strip()
    if not raw:
        raise InvalidJidError("empty jid")
    if raw.startswith(GROUP_PREFIX):
        raw = raw[len(GROUP_PREFIX):]
    lowered = raw.lower()
    if lowered == "status@broadcast" or lowered.endswith(_UNSUPPORTED_DOMAINS):
        raise InvalidJidError(f"unsupported jid {raw}")
    if lowered.endswith(GROUP_DOMAIN):
        group_id = raw[: -len(GROUP_DOMAIN)]
        if not group_id:
            raise InvalidJidError(f"malformed group jid {raw}")
        canonical = f"{group_id}{GROUP_DOMAIN}"
        return ChatIdentity(jid=canonical, identifier=f"{GROUP_PREFIX}{canonical}", phone=None, is_group=True)

    user = raw
    for domain in USER_DOMAINS:
        if lowered.endswith(domain):
            user = raw[: -len(domain)]
            break
    else:
        if "@" in raw:
            raise InvalidJidError(f"unsupported jid {raw}")
    user = user.split(":", 1)[0].lstrip("+")
    if not user.isdigit():
        raise InvalidJidError(f"malformed jid {raw}")
    canonical = f"{user}@s.whatsapp.net"
    return ChatIdentity(jid=canonical, identifier=canonical, phone=user, is_group=False)


def looks_like_phone(name: str | None) -> bool:
    """Chatwoot falls back to the number when a contact has no real name."""
    value = (name or "").strip()
    return value.startswith("+") or (len(value) > 8 and value.isdigit())


def jid_from_phone(phone: str | None) -> str | None:
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    return f"{digits}@s.whatsapp.net" if digits else None


def brazil_variants(phone: str) -> list[str]:
    """+55 mobile numbers exist with and without the ninth digit."""
    digits = phone.lstrip("+")
    if not digits.startswith("55"):
        return []
    area, local = digits[2:4], digits[4:]
    if len(local) == 9 and local.startswith("9"):
        return [f"+55{area}{local[1:]}"]
    if len(local) == 8:
        return [f"+55{area}9{local}"]
    return []


_VARIANT_RULES: dict[str, VariantRule] = {"br": brazil_variants}


def register_variant_rule(name: str, rule: VariantRule) -> None:
    _VARIANT_RULES[name] = rule


def unregister_variant_rule(name: str) -> None:
    _VARIANT_RULES.pop(name, None)


def phone_variants(phone: str, merge_local_formats: bool = False) -> list[str]:
    """Candidate E.164 spellings to search Chatwoot with, most exact first."""
    primary = f"+{phone.lstrip('+')}"
    variants = [primary]
    if not merge_local_formats:
        return variants
    for rule in _VARIANT_RULES.values():
        for candidate in rule(primary):
            if candidate not in variants:
                variants.append(candidate)
    return variants
