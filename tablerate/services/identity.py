"""
Pseudonymous identity derived from device signals and a user-supplied name.

Nothing here is cryptographically strong: the goal is a stable, reusable
pseudonym per (device, name) pair that never exposes the raw signals.
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from ..errors import IntegrityFallbackError, ValidationError
from ..schemas.identity import ClientEnvironment, IdentityRecord
from ..storage.local import LocalStore
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

ANONYMOUS_DISPLAY_NAME = "Anonymous User"
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50

Probe = Callable[[ClientEnvironment], Any]


def _screen(env: ClientEnvironment):
    return env.screen


def _timezone(env: ClientEnvironment):
    if env.timezone is None and env.timezone_offset is None:
        return None
    return {"timezone": env.timezone, "offset": env.timezone_offset}


def _locale(env: ClientEnvironment):
    if not (env.locale or env.language or env.languages):
        return None
    return {"locale": env.locale, "language": env.language, "languages": env.languages}


def _hardware(env: ClientEnvironment):
    values = {
        "concurrency": env.hardware_concurrency,
        "memory": env.device_memory,
        "touch_points": env.max_touch_points,
    }
    return values if any(v is not None for v in values.values()) else None


DEFAULT_PROBES: dict[str, Probe] = {
    "canvas": lambda env: env.canvas,
    "webgl": lambda env: env.webgl,
    "audio": lambda env: env.audio,
    "fonts": lambda env: env.fonts,
    "screen": _screen,
    "timezone": _timezone,
    "locale": _locale,
    "hardware": _hardware,
    "user_agent": lambda env: env.user_agent,
    "platform": lambda env: env.platform,
    "storage": lambda env: env.storage,
}


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def simple_hash(text: str) -> str:
    """Deterministic 32-bit string hash used when the digest is unavailable."""
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sentinel(name: str) -> str:
    return f"{name}-unavailable"


def basic_signals(env: ClientEnvironment) -> dict[str, str]:
    """Minimal signal set used when every probe failed."""
    screen = env.screen or {}
    if screen.get("width") and screen.get("height"):
        screen_text = f"{screen['width']}x{screen['height']}"
    else:
        screen_text = sentinel("screen")
    return {
        "user_agent": env.user_agent or sentinel("user_agent"),
        "screen": screen_text,
        "language": env.language or sentinel("language"),
        "platform": env.platform or sentinel("platform"),
    }


class IdentityProbe:
    def __init__(
        self,
        local: Optional[LocalStore] = None,
        probes: Optional[dict[str, Probe]] = None,
        digest: Callable[[str], str] = sha256_hex,
        clock=utcnow,
    ):
        self._local = local
        self.probes = dict(DEFAULT_PROBES if probes is None else probes)
        self._digest = digest
        self._clock = clock

    # ------------------------------------------------------------------
    # Signals and hashing
    # ------------------------------------------------------------------

    def collect_signals(self, env: ClientEnvironment) -> tuple[dict[str, Any], bool]:
        """Run every probe; returns the signal record and whether it is the basic fallback."""
        signals: dict[str, Any] = {}
        failed = 0
        for name, probe in self.probes.items():
            try:
                value = probe(env)
            except Exception as exc:
                logger.debug("Probe %s failed: %s", name, exc)
                value = None
            if value in (None, "", [], {}):
                signals[name] = sentinel(name)
                failed += 1
            else:
                signals[name] = value

        if failed == len(self.probes):
            logger.warning("Every identity probe failed, using basic signals")
            return basic_signals(env), True
        return signals, False

    def _strong_hash(self, text: str) -> str:
        try:
            value = self._digest(text)
        except Exception as exc:
            raise IntegrityFallbackError("Digest unavailable") from exc
        if not value:
            raise IntegrityFallbackError("Digest returned nothing")
        return value

    def hash_text(self, text: str) -> tuple[str, bool]:
        try:
            return self._strong_hash(text), False
        except IntegrityFallbackError as exc:
            logger.warning("Falling back to simple hash: %s", exc)
            return simple_hash(text), True

    def fingerprint(self, env: Optional[ClientEnvironment] = None) -> tuple[str, bool]:
        signals, basic = self.collect_signals(env or ClientEnvironment())
        digest, degraded = self.hash_text(canonical_json(signals))
        return digest, basic or degraded

    # ------------------------------------------------------------------
    # Identity lifecycle
    # ------------------------------------------------------------------

    async def derive_identity(
        self,
        name: str,
        env: Optional[ClientEnvironment] = None,
        *,
        display_name: Optional[str] = None,
        is_anonymous: bool = False,
    ) -> IdentityRecord:
        trimmed = (name or "").strip()
        if len(trimmed) < NAME_MIN_LENGTH:
            raise ValidationError(f"Name must be at least {NAME_MIN_LENGTH} characters")
        if len(trimmed) > NAME_MAX_LENGTH:
            raise ValidationError(f"Name must be less than {NAME_MAX_LENGTH} characters")

        device_digest, fallback = self.fingerprint(env)
        user_id, degraded = self.hash_text(f"{device_digest}:{trimmed.lower()}")

        now = self._clock()
        created_at = now
        existing = await self.load_identity()
        if existing is not None and existing.user_id == user_id:
            created_at = existing.created_at

        record = IdentityRecord(
            user_id=user_id,
            device_digest=device_digest,
            user_name=trimmed,
            display_name=ANONYMOUS_DISPLAY_NAME if is_anonymous else (display_name or "").strip() or trimmed,
            is_anonymous=is_anonymous,
            is_fallback=fallback or degraded,
            created_at=created_at,
            last_active_at=now,
        )
        await self._save(record)
        logger.info("Identity %s... derived (fallback=%s)", user_id[:10], record.is_fallback)
        return record

    async def load_identity(self) -> Optional[IdentityRecord]:
        if self._local is None:
            return None
        data = await asyncio.to_thread(self._local.get_identity)
        if data is None:
            return None
        try:
            return IdentityRecord.model_validate(data)
        except PydanticValidationError:
            logger.warning("Invalid identity in local store, clearing it")
            await asyncio.to_thread(self._local.delete_identity)
            return None

    async def touch(self) -> Optional[IdentityRecord]:
        record = await self.load_identity()
        if record is None:
            return None
        record = record.model_copy(update={"last_active_at": self._clock()})
        await self._save(record)
        return record

    async def clear_identity(self) -> None:
        if self._local is not None:
            await asyncio.to_thread(self._local.delete_identity)
        logger.info("Identity cleared")

    async def _save(self, record: IdentityRecord) -> None:
        if self._local is None:
            return
        await asyncio.to_thread(
            self._local.put_identity, record.model_dump(mode="json"), record.last_active_at.timestamp()
        )
