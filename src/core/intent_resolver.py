"""
Manvi Assistant — Intent Resolver.

Brain of the assistant: converts a free-text message into one structured
Intent (reminder, routine, event, forwarded message, chat reply, query,
deletion).

Providers are tried in order. The primary provider is metered, so every
attempt first spends one unit of the daily quota; when the quota is gone or
the primary fails, the fallback provider answers in strict JSON mode. If no
provider answers, the result is a `provider_error` intent. `resolve()` never
raises.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, Sequence
from zoneinfo import ZoneInfo

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.core.llm import MalformedResponse, ProviderUnavailable, QuotaExhausted, complete, complete_json
from src.core.usage_counter import UsageCounter
from src.data.db import StorageUnavailable

logger = logging.getLogger(__name__)

SELF_TARGET = "self"
BOTH_PROVIDERS_DOWN = "Both the primary and the fallback AI providers are currently unavailable."

_SELF_TOKENS = {"", "you", "me", "him", "he", "owner", "self", "myself", "null", "none"}
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


# ---------------------------------------------------------------------------
# Intent model — the contract between the resolver and its callers
# ---------------------------------------------------------------------------


class IntentKind(str, Enum):
    REMINDER = "reminder"
    ROUTINE = "routine"
    EVENT = "event"
    INSTANT_MESSAGE = "instant_message"
    CHAT = "chat"
    QUERY_BIRTHDAY = "query_birthday"
    QUERY_SCHEDULE = "query_schedule"
    QUERY_ROUTINES = "query_routines"
    QUERY_CONTACTS = "query_contacts"
    QUERY_REMINDERS = "query_reminders"
    QUERY_EVENTS = "query_events"
    DELETE_TASK = "delete_task"
    PROVIDER_ERROR = "provider_error"
    UNKNOWN = "unknown"


class Intent(BaseModel):
    """Structured interpretation of one inbound message.

    JSON example:
    {
        "kind": "reminder",
        "target_name": "self",
        "time": "14:12:00",
        "date": null,
        "payload": "check logs"
    }

    For kind == "chat", payload is the final reply text.
    """

    model_config = ConfigDict(populate_by_name=True)

    kind: IntentKind = Field(validation_alias=AliasChoices("kind", "intent"))
    target_name: str = Field(
        default=SELF_TARGET, validation_alias=AliasChoices("target_name", "targetName"),
    )
    time: dt.time | None = None
    date: dt.date | None = None
    payload: str | None = Field(
        default=None, validation_alias=AliasChoices("payload", "taskOrMessage"),
    )
    provider_tag: str = ""

    @field_validator("kind", mode="before")
    @classmethod
    def parse_kind(cls, v: Any) -> Any:
        if isinstance(v, IntentKind):
            return v
        if not isinstance(v, str):
            raise ValueError(f"kind must be a string, got {type(v).__name__}")
        value = v.strip().lower()
        if value == "api_error":
            return IntentKind.PROVIDER_ERROR
        if value not in IntentKind._value2member_map_:
            logger.warning("Provider returned unknown intent kind: '%s'", v)
            return IntentKind.UNKNOWN
        return value

    @field_validator("target_name", mode="before")
    @classmethod
    def parse_target(cls, v: Any) -> str:
        if v is None:
            return SELF_TARGET
        if not isinstance(v, str):
            raise ValueError("target_name must be a string")
        value = v.strip()
        return SELF_TARGET if value.lower() in _SELF_TOKENS else value

    @field_validator("time", mode="before")
    @classmethod
    def parse_time(cls, v: Any) -> Any:
        if v is None or isinstance(v, dt.time):
            return v
        if not isinstance(v, str):
            raise ValueError("time must be an HH:MM:SS string")
        match = _TIME_RE.match(v.strip())
        if not match:
            return None
        hour, minute, second = int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)
        if hour > 23 or minute > 59 or second > 59:
            return None
        return dt.time(hour, minute, second)

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, v: Any) -> Any:
        if v is None or isinstance(v, dt.date):
            return v
        if not isinstance(v, str):
            raise ValueError("date must be a YYYY-MM-DD string")
        try:
            return dt.date.fromisoformat(v.strip())
        except ValueError:
            return None

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, (int, float)):
            return str(v)
        raise ValueError("payload must be a string")

    @property
    def is_for_self(self) -> bool:
        return self.target_name == SELF_TARGET


def parse_intent(data: dict) -> Intent:
    """Validate a provider's JSON object into an Intent.

    Raises MalformedResponse on schema violations.
    """
    try:
        return Intent.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponse(f"Provider JSON does not match the Intent schema: {exc}") from exc


# ---------------------------------------------------------------------------
# Classification request
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are the intelligent brain of a personal messaging assistant named {assistant}.
Your owner is {owner}. You are talking to a user through a chat app.

CRITICAL CONTEXT:
The current date and time right now is: {now} ({timezone}).
If the user asks for a relative time like "in 5 minutes", use this current time
to calculate the exact HH:MM:SS. Interpret relative dates ("tomorrow") the same way.

Your job is to read the user's message and extract the exact intent.
You MUST respond with ONLY a valid, raw JSON object. No markdown, no extra text.

Use this exact JSON structure:
{{
  "kind": one of {kinds},
  "target_name": "you" if the message is meant for {owner} (or "him", "he", "owner"), otherwise the person's name,
  "time": "HH:MM:SS" in 24-hour format if a time is mentioned or calculated ({timezone}), else null,
  "date": "YYYY-MM-DD" if a specific date is mentioned or calculated, else null,
  "payload": the cleaned-up task or message; for "chat" your full reply; for "delete_task" what to delete
}}

Examples:
Message: "What contacts do you have?"
JSON: {{"kind": "query_contacts", "target_name": "you", "time": null, "date": null, "payload": null}}

Message: "Show me all active reminders"
JSON: {{"kind": "query_reminders", "target_name": "you", "time": null, "date": null, "payload": null}}

Message: "List my daily routines"
JSON: {{"kind": "query_routines", "target_name": "you", "time": null, "date": null, "payload": null}}

Message: "What are my special events?"
JSON: {{"kind": "query_events", "target_name": "you", "time": null, "date": null, "payload": null}}

Message: "When is Manu's birthday?"
JSON: {{"kind": "query_birthday", "target_name": "manu", "time": null, "date": null, "payload": null}}

Message: "What is my schedule for tomorrow?" (if today were 2026-02-27)
JSON: {{"kind": "query_schedule", "target_name": "you", "time": null, "date": "2026-02-28", "payload": null}}

Message: "Remind me in 5 minutes to check logs" (if the time were 14:07:00)
JSON: {{"kind": "reminder", "target_name": "you", "time": "14:12:00", "date": null, "payload": "check logs"}}

Message: "Set a daily routine to remind dad to take his medicine at 9 AM"
JSON: {{"kind": "routine", "target_name": "dad", "time": "09:00:00", "date": null, "payload": "take his medicine"}}

Message: "Manu's birthday is on Feb 9th 2026"
JSON: {{"kind": "event", "target_name": "manu", "time": null, "date": "2026-02-09", "payload": "birthday"}}

Message: "Tell me a joke"
JSON: {{"kind": "chat", "target_name": null, "time": null, "date": null, "payload": "Why do programmers prefer dark mode? Because light attracts bugs!"}}

Message: "Tell him to call me back"
JSON: {{"kind": "instant_message", "target_name": "you", "time": null, "date": null, "payload": "call me back"}}

Message: "Delete the reminder to drink water"
JSON: {{"kind": "delete_task", "target_name": "you", "time": null, "date": null, "payload": "drink water"}}

If nothing fits, use "unknown".
"""

_CLASSIFIABLE_KINDS = [k.value for k in IntentKind if k is not IntentKind.PROVIDER_ERROR]


@dataclass(frozen=True)
class ClassificationRequest:
    """One prompt, shared by every provider attempt for a message."""

    system: str
    user_message: str


def build_request(
    text: str,
    now: dt.datetime,
    tz: ZoneInfo,
    assistant_name: str,
    owner_name: str,
) -> ClassificationRequest:
    """Embed now (for relative-time math), the schema and the examples."""
    local_now = now.astimezone(tz) if now.tzinfo else now.replace(tzinfo=tz)
    system = _SYSTEM_PROMPT.format(
        assistant=assistant_name,
        owner=owner_name,
        now=local_now.strftime("%A, %Y-%m-%d %H:%M:%S"),
        timezone=tz.key,
        kinds=" | ".join(f'"{k}"' for k in _CLASSIFIABLE_KINDS),
    )
    return ClassificationRequest(system=system, user_message=f'Now, analyze this message:\nMessage: "{text}"')


def extract_json_object(raw_text: str) -> dict:
    """Find a JSON object in free text; the provider may wrap it in prose.

    Raises MalformedResponse if none is found.
    """
    if not raw_text:
        raise MalformedResponse("Empty provider response")

    match = re.search(r"\{[\s\S]*\}", raw_text)
    if match:
        try:
            data = json.loads(match.group(0))
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    # Greedy match spans several objects or trailing braces; scan instead
    decoder = json.JSONDecoder()
    for start in (m.start() for m in re.finditer(r"\{", raw_text)):
        try:
            data, _ = decoder.raw_decode(raw_text, start)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise MalformedResponse(f"No JSON object found in provider response: {raw_text[:200]!r}")


# ---------------------------------------------------------------------------
# Provider strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderAnswer:
    data: dict
    tag: str


class ProviderStrategy(Protocol):
    """One provider in the fallback chain.

    attempt() raises ProviderUnavailable (or a subclass) when it cannot answer.
    """

    name: str

    async def attempt(self, request: ClassificationRequest) -> ProviderAnswer: ...


class PrimaryProvider:
    """Metered free-text provider, gated by the daily usage counter."""

    name = "primary"

    def __init__(
        self,
        usage_counter: UsageCounter,
        complete_fn: Callable[[str, str], Awaitable[str]] | None = None,
    ) -> None:
        self._counter = usage_counter
        self._complete = complete_fn

    async def attempt(self, request: ClassificationRequest) -> ProviderAnswer:
        try:
            decision = await asyncio.to_thread(self._counter.try_consume)
        except StorageUnavailable as exc:
            raise QuotaExhausted(f"Usage counter unavailable: {exc}") from exc
        if not decision.allowed:
            raise QuotaExhausted("Daily primary provider limit reached")

        complete_fn = self._complete or complete
        raw_text = await complete_fn(request.system, request.user_message)
        logger.debug("Primary raw response: %s", raw_text)
        data = extract_json_object(raw_text)
        return ProviderAnswer(data=data, tag=f"primary, remaining={decision.remaining}")


class FallbackProvider:
    """Unmetered provider asked for strict JSON output."""

    name = "fallback"

    def __init__(self, complete_json_fn: Callable[[str, str], Awaitable[dict]] | None = None) -> None:
        self._complete_json = complete_json_fn

    async def attempt(self, request: ClassificationRequest) -> ProviderAnswer:
        complete_json_fn = self._complete_json or complete_json
        data = await complete_json_fn(request.system, request.user_message)
        logger.debug("Fallback raw response: %s", data)
        return ProviderAnswer(data=data, tag="fallback")


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class IntentResolver:
    """Tries each provider in order and returns the first valid Intent."""

    def __init__(
        self,
        providers: Sequence[ProviderStrategy],
        timezone: str | None = None,
        assistant_name: str | None = None,
        owner_name: str | None = None,
    ) -> None:
        if timezone is None or assistant_name is None or owner_name is None:
            from src.config import settings
            timezone = timezone or settings.TIMEZONE
            assistant_name = assistant_name or settings.ASSISTANT_NAME
            owner_name = owner_name or settings.OWNER_NAME

        self._providers = list(providers)
        self._tz = ZoneInfo(timezone)
        self._assistant_name = assistant_name
        self._owner_name = owner_name

    async def resolve(self, text: str, now: dt.datetime) -> Intent:
        """Resolve text into an Intent, using now for relative times.

        Never raises: when every provider fails the result has kind
        provider_error and a payload explaining that none is available.
        """
        request = build_request(text, now, self._tz, self._assistant_name, self._owner_name)
        failed: list[str] = []

        for provider in self._providers:
            try:
                answer = await provider.attempt(request)
                intent = parse_intent(answer.data)
            except QuotaExhausted as exc:
                logger.info("Skipping %s provider: %s", provider.name, exc)
                continue
            except ProviderUnavailable as exc:
                logger.warning("%s provider failed: %s", provider.name.capitalize(), exc)
                failed.append(provider.name)
                continue
            except Exception as exc:
                logger.exception("Unexpected error from %s provider: %s", provider.name, exc)
                failed.append(provider.name)
                continue

            tag = answer.tag
            if failed:
                tag = f"{tag} (after {', '.join(failed)} error)"
            logger.info("Resolved intent '%s' via %s", intent.kind.value, tag)
            return intent.model_copy(update={"provider_tag": tag})

        logger.error("No provider could resolve message: %s", text[:80])
        return Intent(
            kind=IntentKind.PROVIDER_ERROR,
            target_name=SELF_TARGET,
            payload=BOTH_PROVIDERS_DOWN,
            provider_tag="unavailable",
        )


def build_resolver(usage_counter: UsageCounter) -> IntentResolver:
    """Default chain: metered primary, then strict-JSON fallback."""
    return IntentResolver([PrimaryProvider(usage_counter), FallbackProvider()])
