"""Broker payload decoding.

Each broker kind has its own decoder and its own field tables. A delivery
whose records match none of the known shapes raises NormalizationError.
A single record that cannot be decoded is skipped and reported in
``ignored`` so its siblings still go through, and a field that cannot be
mapped stays in raw_payload.
"""

import re
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, Optional

from engage.logging_config import get_logger
from engage.services.errors import NormalizationError
from engage.services.events import DeliveryAck, IgnoredMessage, InboundEvent, NormalizationResult

logger = get_logger("normalizer")

BROKER_CONTRACT = "contract"
BROKER_BAILEYS = "baileys"
BROKER_CHATFLOW = "chatflow"
BROKER_AUTO = "auto"

IGNORED_OUTBOUND_ECHO = "outbound_echo"
IGNORED_FROM_ME = "from_me"
IGNORED_GROUP = "group_or_broadcast"
IGNORED_INVALID = "invalid_message"
IGNORED_UNRECOGNIZED = "unrecognized_shape"
IGNORED_UNSUPPORTED_EVENT = "unsupported_event"
IGNORED_ACK_NOT_OURS = "ack_not_from_me"
IGNORED_ACK_STATUS = "ack_status_unknown"

# contract envelope: message.<field> candidates for the text body
CONTRACT_TEXT_FIELDS = ("text", "conversation", "body", "caption")
CONTRACT_SENDER_FIELDS = ("phone", "remoteJid", "jid")
CONTRACT_NAME_FIELDS = ("name", "pushName")
CONTRACT_EVENT_TYPES = {"MESSAGE_INBOUND", "MESSAGE_OUTBOUND"}

# baileys upsert: nested paths inside message.* that carry text
BAILEYS_TEXT_PATHS = (
    ("conversation",),
    ("extendedTextMessage", "text"),
    ("imageMessage", "caption"),
    ("videoMessage", "caption"),
    ("documentMessage", "caption"),
    ("buttonsResponseMessage", "selectedDisplayText"),
    ("listResponseMessage", "title"),
    ("templateButtonReplyMessage", "selectedDisplayText"),
)
BAILEYS_WRAPPERS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2", "documentWithCaptionMessage")
BAILEYS_UPSERT_EVENTS = {"WHATSAPP_MESSAGES_UPSERT", "MESSAGES.UPSERT", "MESSAGES_UPSERT"}
BAILEYS_UPDATE_EVENTS = {"WHATSAPP_MESSAGES_UPDATE", "MESSAGES.UPDATE", "MESSAGES_UPDATE"}

# baileys WAMessageStatus, numeric and named; ERROR and PENDING carry no ack
BAILEYS_ACK_STATUSES = {
    2: "sent",
    3: "delivered",
    4: "read",
    5: "read",
    "SERVER_ACK": "sent",
    "SENT": "sent",
    "DELIVERY_ACK": "delivered",
    "DELIVERED": "delivered",
    "READ": "read",
    "PLAYED": "read",
}

# chatflow gateway: body.metadata.<field>
CHATFLOW_INSTANCE_FIELDS = ("instanceId", "instance_id", "instance")

_DIGITS = re.compile(r"\D+")


def _as_dict(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


def _read_str(*candidates: Any) -> Optional[str]:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return str(candidate)
    return None


def _dig(record: Optional[dict], path: Iterable[str]) -> Any:
    current: Any = record
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def normalize_address(value: Optional[str]) -> Optional[str]:
    """Strip the JID domain and keep digits when it looks like a phone number."""
    if not value:
        return None
    without_domain = value.strip().split("@", 1)[0].split(":", 1)[0]
    digits = _DIGITS.sub("", without_domain)
    if len(digits) >= 8:
        return digits
    return without_domain or None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO strings, epoch seconds, epoch milliseconds, or protobuf Long dicts."""
    if isinstance(value, dict) and "low" in value:
        value = value.get("low")
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            value = int(text)
        else:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1_000_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def _require(value: Optional[str], field: str) -> str:
    if not value:
        raise NormalizationError(f"missing {field}")
    return value


def _records(payload: Any, list_key: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    record = _as_dict(payload)
    if record is None:
        return []
    nested = record.get(list_key)
    if isinstance(nested, list):
        return nested
    return [record]


def _check_shape(records: list[Any], matches: Callable[[Any], bool], expected: str) -> None:
    """Zero records is a valid empty delivery; records of which none match is not."""
    if records and not any(isinstance(record, dict) and matches(record) for record in records):
        raise NormalizationError(f"Payload does not match {expected}")


def _skip(
    result: NormalizationResult,
    index: int,
    reason: str,
    external_id: Optional[str] = None,
    detail: Optional[str] = None,
) -> None:
    result.ignored.append(IgnoredMessage(index, reason, external_id, detail))
    if reason in (IGNORED_INVALID, IGNORED_UNRECOGNIZED):
        logger.warning(
            f"Skipping unreadable {result.broker_kind} record #{index}",
            extra={"context": {"reason": reason, "external_message_id": external_id, "detail": detail}},
        )


# --- contract -------------------------------------------------------------


def _is_contract_envelope(record: dict) -> bool:
    event_type = _read_str(record.get("type"), record.get("event"))
    return bool(event_type and event_type.upper() in CONTRACT_EVENT_TYPES and _as_dict(record.get("payload")) is not None)


def _contract_text(message: dict) -> Optional[str]:
    for field in CONTRACT_TEXT_FIELDS:
        value = message.get(field)
        if isinstance(value, dict):
            value = value.get("body")
        if isinstance(value, str):
            return value
    return None


def _contract_external_id(envelope: dict) -> Optional[str]:
    message = _as_dict(_dig(envelope, ("payload", "message"))) or {}
    return _read_str(envelope.get("id"), message.get("id"), _dig(message, ("key", "id")))


def _decode_contract_envelope(envelope: dict, tenant_hint: Optional[str]) -> InboundEvent:
    body = envelope["payload"]
    message = _as_dict(body.get("message")) or {}
    contact = _as_dict(body.get("contact")) or {}
    metadata = _as_dict(body.get("metadata")) or {}
    sender = normalize_address(
        _read_str(
            *(contact.get(field) for field in CONTRACT_SENDER_FIELDS),
            _dig(message, ("key", "remoteJid")),
            _dig(metadata, ("contact", "remoteJid")),
        )
    )
    timestamp = parse_timestamp(envelope.get("timestamp")) or parse_timestamp(body.get("timestamp"))
    return InboundEvent(
        tenant_id=tenant_hint or _read_str(envelope.get("tenantId")),
        channel_instance_id=_require(_read_str(body.get("instanceId"), envelope.get("instanceId")), "instanceId"),
        external_message_id=_require(_contract_external_id(envelope), "id"),
        sender_address=_require(sender, "contact.phone"),
        sender_display_name=_read_str(*(contact.get(field) for field in CONTRACT_NAME_FIELDS)),
        content=_contract_text(message),
        timestamp=timestamp or datetime.now(timezone.utc),
        broker_kind=BROKER_CONTRACT,
        raw_payload=envelope,
    )


def decode_contract(payload: Any, tenant_hint: Optional[str]) -> NormalizationResult:
    envelopes = _records(payload, "events")
    _check_shape(envelopes, _is_contract_envelope, "the broker contract envelope")

    result = NormalizationResult(broker_kind=BROKER_CONTRACT)
    for index, envelope in enumerate(envelopes):
        if not isinstance(envelope, dict) or not _is_contract_envelope(envelope):
            _skip(result, index, IGNORED_UNRECOGNIZED)
            continue
        external_id = _contract_external_id(envelope)
        event_type = _read_str(envelope.get("type"), envelope.get("event")).upper()
        direction = (_read_str(envelope["payload"].get("direction")) or "").lower()
        if event_type == "MESSAGE_OUTBOUND" or direction == "outbound":
            _skip(result, index, IGNORED_OUTBOUND_ECHO, external_id)
            continue
        try:
            result.events.append(_decode_contract_envelope(envelope, tenant_hint))
        except NormalizationError as e:
            _skip(result, index, IGNORED_INVALID, external_id, str(e))
    return result


# --- baileys --------------------------------------------------------------


def _baileys_event_name(record: dict) -> str:
    return (_read_str(record.get("event")) or "").upper()


def _baileys_updates(record: dict) -> Optional[list]:
    payload = record.get("payload")
    if isinstance(payload, list):
        return payload
    for path in (("payload", "updates"), ("payload", "raw", "updates"), ("updates",)):
        updates = _dig(record, path)
        if isinstance(updates, list):
            return updates
    return None


def _is_baileys_delivery(record: dict) -> bool:
    """Upserts and updates, plus any other named event from a baileys instance (skipped later)."""
    event_name = _baileys_event_name(record)
    if event_name in BAILEYS_UPDATE_EVENTS and _baileys_updates(record) is not None:
        return True
    body = _as_dict(record.get("payload")) or record
    if isinstance(body.get("messages"), list):
        return True
    return bool(event_name) and _read_str(record.get("iid"), record.get("instanceId")) is not None


def _unwrap_baileys(message: Optional[dict]) -> dict:
    current = message or {}
    seen = 0
    while seen < 5:
        seen += 1
        for wrapper in BAILEYS_WRAPPERS:
            nested = _as_dict(_dig(current, (wrapper, "message")))
            if nested is not None:
                current = nested
                break
        else:
            break
    return current


def _baileys_text(message: dict) -> Optional[str]:
    for path in BAILEYS_TEXT_PATHS:
        value = _dig(message, path)
        if isinstance(value, str):
            return value
    return None


def ack_status(value: Any) -> Optional[str]:
    """Map a baileys message status (number, numeric string or name) to a dispatch status."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip().upper()
        value = int(text) if text.isdigit() else text
    return BAILEYS_ACK_STATUSES.get(value)


def _decode_baileys_message(
    raw: dict,
    instance_id: Optional[str],
    tenant_id: Optional[str],
) -> InboundEvent:
    key = _as_dict(raw.get("key")) or {}
    return InboundEvent(
        tenant_id=tenant_id,
        channel_instance_id=_require(instance_id, "instanceId"),
        external_message_id=_require(_read_str(key.get("id")), "key.id"),
        sender_address=_require(normalize_address(_read_str(key.get("remoteJid"))), "key.remoteJid"),
        sender_display_name=_read_str(raw.get("pushName")),
        content=_baileys_text(_unwrap_baileys(_as_dict(raw.get("message")))),
        timestamp=parse_timestamp(raw.get("messageTimestamp")) or datetime.now(timezone.utc),
        broker_kind=BROKER_BAILEYS,
        raw_payload=raw,
    )


def _decode_baileys_upsert(
    result: NormalizationResult,
    messages: list,
    instance_id: Optional[str],
    tenant_id: Optional[str],
    index: int,
) -> int:
    for raw in messages:
        index += 1
        if not isinstance(raw, dict):
            _skip(result, index, IGNORED_INVALID, detail="message is not an object")
            continue
        key = _as_dict(raw.get("key")) or {}
        external_id = _read_str(key.get("id"))
        remote_jid = _read_str(key.get("remoteJid")) or ""
        if key.get("fromMe") is True:
            _skip(result, index, IGNORED_FROM_ME, external_id)
            continue
        if remote_jid.endswith("@g.us") or remote_jid.endswith("@broadcast"):
            _skip(result, index, IGNORED_GROUP, external_id)
            continue
        try:
            result.events.append(_decode_baileys_message(raw, instance_id, tenant_id))
        except NormalizationError as e:
            _skip(result, index, IGNORED_INVALID, external_id, str(e))
    return index


def _decode_baileys_updates(
    result: NormalizationResult,
    updates: list,
    instance_id: Optional[str],
    tenant_id: Optional[str],
    index: int,
) -> int:
    """Status updates only matter for messages we sent (``fromMe``)."""
    for entry in updates:
        index += 1
        if not isinstance(entry, dict):
            _skip(result, index, IGNORED_INVALID, detail="update is not an object")
            continue
        key = _as_dict(entry.get("key")) or {}
        details = _as_dict(entry.get("update")) or {}
        external_id = _read_str(details.get("id"), entry.get("id"), key.get("id"))
        if not external_id:
            _skip(result, index, IGNORED_INVALID, detail="missing key.id")
            continue
        if not (key.get("fromMe") is True or entry.get("fromMe") is True):
            _skip(result, index, IGNORED_ACK_NOT_OURS, external_id)
            continue
        status = ack_status(details.get("status", entry.get("status", details.get("ack"))))
        if status is None:
            _skip(result, index, IGNORED_ACK_STATUS, external_id)
            continue
        timestamp = parse_timestamp(details.get("messageTimestamp") or details.get("timestamp") or entry.get("timestamp"))
        result.acks.append(
            DeliveryAck(
                tenant_id=tenant_id,
                channel_instance_id=instance_id,
                external_message_id=external_id,
                status=status,
                timestamp=timestamp or datetime.now(timezone.utc),
            )
        )
    return index


def decode_baileys(payload: Any, tenant_hint: Optional[str]) -> NormalizationResult:
    deliveries = _records(payload, "events")
    _check_shape(deliveries, _is_baileys_delivery, "a baileys messages.upsert or messages.update delivery")

    result = NormalizationResult(broker_kind=BROKER_BAILEYS)
    index = -1
    for delivery in deliveries:
        if not isinstance(delivery, dict) or not _is_baileys_delivery(delivery):
            index += 1
            _skip(result, index, IGNORED_UNRECOGNIZED)
            continue
        body = _as_dict(delivery.get("payload")) or delivery
        event_name = _baileys_event_name(delivery)
        instance_id = _read_str(delivery.get("instanceId"), delivery.get("iid"), body.get("instanceId"))
        tenant_id = tenant_hint or _read_str(delivery.get("tenantId"), body.get("tenantId"))

        updates = _baileys_updates(delivery) if event_name in BAILEYS_UPDATE_EVENTS else None
        messages = body.get("messages")
        if updates is not None:
            index = _decode_baileys_updates(result, updates, instance_id, tenant_id, index)
        elif isinstance(messages, list) and (not event_name or event_name in BAILEYS_UPSERT_EVENTS):
            index = _decode_baileys_upsert(result, messages, instance_id, tenant_id, index)
        else:
            index += 1
            _skip(result, index, IGNORED_UNSUPPORTED_EVENT, detail=event_name)
            logger.info("Skipping unsupported baileys event", extra={"context": {"event": event_name}})
    return result


# --- chatflow -------------------------------------------------------------


def _chatflow_body(record: dict) -> Optional[dict]:
    body = _as_dict(record.get("body")) or record
    if _as_dict(body.get("metadata")) is None or "message" not in body and "messageType" not in body:
        return None
    return body


def _decode_chatflow_body(record: dict, body: dict, tenant_hint: Optional[str]) -> InboundEvent:
    metadata = body["metadata"]
    message_type = (_read_str(body.get("messageType")) or "text").lower()
    text = body.get("message") if isinstance(body.get("message"), str) else None
    if message_type != "text" and not (text and text.strip()):
        text = None
    remote_jid = _read_str(metadata.get("remoteJid"), metadata.get("sender"))
    return InboundEvent(
        tenant_id=tenant_hint or _read_str(record.get("tenantId"), metadata.get("tenantId")),
        channel_instance_id=_require(
            _read_str(*(metadata.get(field) for field in CHATFLOW_INSTANCE_FIELDS)), "metadata.instanceId"
        ),
        external_message_id=_require(_read_str(metadata.get("messageId")), "metadata.messageId"),
        sender_address=_require(normalize_address(remote_jid), "metadata.remoteJid"),
        sender_display_name=_read_str(metadata.get("pushName"), metadata.get("senderName")),
        content=text,
        timestamp=parse_timestamp(metadata.get("timestamp")) or datetime.now(timezone.utc),
        broker_kind=BROKER_CHATFLOW,
        raw_payload=record,
    )


def decode_chatflow(payload: Any, tenant_hint: Optional[str]) -> NormalizationResult:
    records = _records(payload, "events")
    _check_shape(records, lambda record: _chatflow_body(record) is not None, "the chatflow webhook body")

    result = NormalizationResult(broker_kind=BROKER_CHATFLOW)
    for index, record in enumerate(records):
        body = _chatflow_body(record) if isinstance(record, dict) else None
        if body is None:
            _skip(result, index, IGNORED_UNRECOGNIZED)
            continue
        try:
            result.events.append(_decode_chatflow_body(record, body, tenant_hint))
        except NormalizationError as e:
            _skip(result, index, IGNORED_INVALID, _read_str(body["metadata"].get("messageId")), str(e))
    return result


Decoder = Callable[[Any, Optional[str]], NormalizationResult]

DECODERS: dict[str, Decoder] = {
    BROKER_CONTRACT: decode_contract,
    BROKER_BAILEYS: decode_baileys,
    BROKER_CHATFLOW: decode_chatflow,
}


def detect_broker_kind(payload: Any) -> Optional[str]:
    records = [record for record in _records(payload, "events") if isinstance(record, dict)]
    if not records:
        return None
    if any(_is_contract_envelope(record) for record in records):
        return BROKER_CONTRACT
    if any(_is_baileys_delivery(record) for record in records):
        return BROKER_BAILEYS
    if any(_chatflow_body(record) is not None for record in records):
        return BROKER_CHATFLOW
    return None


def normalize(raw_payload: Any, broker_kind: str, tenant_hint: Optional[str] = None) -> NormalizationResult:
    """Decode one webhook delivery into zero or more InboundEvents and DeliveryAcks.

    ``tenant_hint`` (from the request) wins over any tenant the payload carries.
    """
    kind = (broker_kind or "").strip().lower()
    decoder = DECODERS.get(kind)
    if decoder is None and kind != BROKER_AUTO:
        raise NormalizationError(f"Unknown broker kind '{broker_kind}'. Known kinds: {', '.join(sorted(DECODERS))}, auto")
    if not isinstance(raw_payload, (dict, list)):
        raise NormalizationError("Payload must be a JSON object or array")

    if kind == BROKER_AUTO:
        if not _records(raw_payload, "events"):
            return NormalizationResult(broker_kind=BROKER_AUTO)
        detected = detect_broker_kind(raw_payload)
        if detected is None:
            raise NormalizationError("Payload does not match any known broker shape")
        kind = detected
        decoder = DECODERS[kind]

    result = decoder(raw_payload, tenant_hint)
    logger.debug(
        "Normalized delivery",
        extra={
            "context": {
                "broker_kind": kind,
                "events": len(result.events),
                "acks": len(result.acks),
                "ignored": len(result.ignored),
            }
        },
    )
    return result
