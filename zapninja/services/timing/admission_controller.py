"""
Admission Controller - human pacing and per-user throttling.

The message pipeline asks this controller, before replying, whether a
message may be answered and how long to wait first:
- Working-hours gating (windows may wrap midnight)
- Per-phone hourly rate limit
- Burst protection (sub-second gaps, >5 messages in 30s)
- Response delay with reading time and jitter
- Typing simulation, inter-message delay and rest periods

Design:
- Fail-open: any internal error (including missing configuration) yields
  the most permissive default, never an exception
- Counters are read and written with no await in between, so concurrent
  handlers on the event loop cannot lose updates
- All pauses are cancelable per session through DelayRegistry

Usage:
    controller = AdmissionController(SessionConfigRepository())

    decision = await controller.check_rate_limit("5511999999999", "vendas")
    if not decision.allowed:
        ...  # reply with a throttling message
"""

import asyncio
import math
import random
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from zapninja.config import settings
from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.domain.timing_domain import (
    DEFAULT_MESSAGE_DELAY_MS,
    DEFAULT_MESSAGE_LIMIT,
    DEFAULT_RESPONSE_TIME_MS,
    BurstDecision,
    RateLimitDecision,
    TimingConfig,
    UserRateWindow,
)
from zapninja.services.timing.delays import DelayRegistry

logger = get_logger(__name__)

READING_MS_PER_CHAR = 50
MAX_READING_MS = 3000
JITTER_RATIO = 0.2
MIN_RESPONSE_DELAY_MS = 500

TYPING_CHARS_PER_MINUTE = 300
MAX_TYPING_MS = 10_000
MIN_TYPING_MS = 1000

BURST_MIN_GAP_MS = 1000
BURST_MAX_MESSAGES = 5
BURST_WINDOW_MS = 30_000

# "Every 10 messages (~2s each) or 5 minutes": no message count is kept,
# so this is a fixed 20s time threshold.
REST_INTERVAL_MS = min(10 * 2000, 5 * 60 * 1000)

BURST_TOO_FAST_REASON = "Muitas mensagens muito rápido. Aguarde um momento."
BURST_LIMIT_REASON = (
    "Limite de mensagens por minuto excedido. Tente novamente em alguns segundos."
)


class ConfigMissing(Exception):
    """Raised internally when a session has no timing configuration."""

    def __init__(self, message: str, session_name: str):
        super().__init__(message)
        self.session_name = session_name
        self.recoverable = True


class TimingConfigSource(Protocol):
    async def get_timing_config(self, session_name: str) -> TimingConfig | None: ...


class AdmissionController:
    def __init__(
        self,
        config_source: TimingConfigSource,
        *,
        window_seconds: int | None = None,
        clock: Callable[[], float] | None = None,
        rng: random.Random | None = None,
        delays: DelayRegistry | None = None,
    ):
        self.config_source = config_source
        self.window_ms = (
            window_seconds if window_seconds is not None else settings.RATE_LIMIT_WINDOW_SECONDS
        ) * 1000
        self._clock = clock or (lambda: time.time() * 1000)
        self._rng = rng or random.Random()
        self.delays = delays or DelayRegistry()

        self._rate_windows: dict[str, UserRateWindow] = {}
        self._rest_states: dict[str, float] = {}

        logger.info("Admission controller initialized", window_seconds=self.window_ms // 1000)

    def _now_ms(self) -> float:
        return self._clock()

    async def _get_config(self, session_name: str) -> TimingConfig:
        config = await self.config_source.get_timing_config(session_name)
        if config is None:
            raise ConfigMissing(f"No timing configuration for '{session_name}'", session_name)
        return config

    # =======================================================================
    # ADMISSION DECISIONS
    # =======================================================================

    async def is_within_working_hours(self, session_name: str, now: datetime | None = None) -> bool:
        try:
            config = await self.config_source.get_timing_config(session_name)
            if config is None or config.working_hours is None:
                return True

            now = now or datetime.now()
            return config.working_hours.contains(now.hour * 60 + now.minute)
        except Exception as e:
            logger.error("Working hours check failed", session_name=session_name, error=str(e))
            return True

    async def check_rate_limit(self, phone: str, session_name: str) -> RateLimitDecision:
        try:
            config = await self._get_config(session_name)
            limit = (
                config.message_limit if config.message_limit is not None else DEFAULT_MESSAGE_LIMIT
            )

            if limit == 0:
                return RateLimitDecision(allowed=True, remaining=math.inf, reset_time=0)

            now = self._now_ms()
            window = self._rate_windows.get(phone)
            if window is None or now - window.window_start > self.window_ms:
                window = UserRateWindow(phone=phone, message_count=0, window_start=now, last_message=now)
                self._rate_windows[phone] = window

            allowed = window.message_count < limit
            if allowed:
                window.message_count += 1
                window.last_message = now

            decision = RateLimitDecision(
                allowed=allowed,
                remaining=max(0, limit - window.message_count),
                reset_time=window.window_start + self.window_ms,
            )

            if not allowed:
                logger.warning(
                    "Rate limit exceeded",
                    session_name=session_name,
                    phone=phone,
                    limit=limit,
                    reset_time=decision.reset_time,
                )
            return decision

        except ConfigMissing as e:
            logger.warning("Rate limit check without config, allowing", error=str(e))
        except Exception as e:
            logger.error("Rate limit check failed", session_name=session_name, error=str(e))

        return RateLimitDecision(allowed=True, remaining=DEFAULT_MESSAGE_LIMIT, reset_time=0)

    async def check_burst_protection(self, phone: str, session_name: str) -> BurstDecision:
        try:
            config = await self._get_config(session_name)
            if not config.burst_protection:
                return BurstDecision(blocked=False)

            now = self._now_ms()
            window = self._rate_windows.get(phone)

            if window is not None:
                if now - window.last_message < BURST_MIN_GAP_MS:
                    logger.info("Burst blocked: sub-second gap", session_name=session_name, phone=phone)
                    return BurstDecision(blocked=True, reason=BURST_TOO_FAST_REASON)

                if (
                    window.message_count > BURST_MAX_MESSAGES
                    and now - window.window_start < BURST_WINDOW_MS
                ):
                    logger.info("Burst blocked: window limit", session_name=session_name, phone=phone)
                    return BurstDecision(blocked=True, reason=BURST_LIMIT_REASON)

                window.last_message = now
            else:
                self._rate_windows[phone] = UserRateWindow(
                    phone=phone, message_count=0, window_start=now, last_message=now
                )

            return BurstDecision(blocked=False)

        except ConfigMissing:
            return BurstDecision(blocked=False)
        except Exception as e:
            logger.error("Burst protection check failed", session_name=session_name, error=str(e))
            return BurstDecision(blocked=False)

    # =======================================================================
    # PACING
    # =======================================================================

    async def calculate_response_delay(self, session_name: str, message_length: int = 0) -> int:
        """Delay in ms before replying; never below MIN_RESPONSE_DELAY_MS."""
        try:
            config = await self._get_config(session_name)

            base_delay = (
                config.response_time
                if config.response_time is not None
                else DEFAULT_RESPONSE_TIME_MS
            )
            if config.adaptive_timing and message_length > 0:
                base_delay += min(message_length * READING_MS_PER_CHAR, MAX_READING_MS)

            jittered = base_delay * self._rng.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)
            return max(MIN_RESPONSE_DELAY_MS, round(jittered))

        except ConfigMissing:
            return DEFAULT_RESPONSE_TIME_MS
        except Exception as e:
            logger.error("Response delay calculation failed", session_name=session_name, error=str(e))
            return DEFAULT_RESPONSE_TIME_MS

    async def apply_response_delay(self, session_name: str, message_length: int = 0) -> int:
        delay = await self.calculate_response_delay(session_name, message_length)
        logger.debug("Applying response delay", session_name=session_name, delay_ms=delay)
        await self.delays.sleep(session_name, delay, kind="response")
        return delay

    async def simulate_typing(self, session_name: str, response_length: int = 0) -> int:
        """Suspend for the simulated typing time. Returns the ms waited (0 when skipped)."""
        try:
            config = await self._get_config(session_name)
            if not config.typing_simulation:
                return 0

            typing_ms = min(response_length * 60_000 / TYPING_CHARS_PER_MINUTE, MAX_TYPING_MS)
            if typing_ms < MIN_TYPING_MS:
                return 0
        except ConfigMissing:
            return 0
        except Exception as e:
            logger.error("Typing simulation failed", session_name=session_name, error=str(e))
            return 0

        logger.debug("Simulating typing", session_name=session_name, typing_ms=round(typing_ms))
        await self.delays.sleep(session_name, typing_ms, kind="typing")
        return round(typing_ms)

    async def apply_message_delay(self, session_name: str) -> int:
        try:
            config = await self._get_config(session_name)
            delay = (
                config.message_delay
                if config.message_delay is not None
                else DEFAULT_MESSAGE_DELAY_MS
            )
        except ConfigMissing:
            delay = DEFAULT_MESSAGE_DELAY_MS
        except Exception as e:
            logger.error("Message delay lookup failed", session_name=session_name, error=str(e))
            return 0

        if delay <= 0:
            return 0

        await self.delays.sleep(session_name, delay, kind="message")
        return delay

    async def should_apply_rest_period(self, session_name: str) -> bool:
        try:
            config = await self._get_config(session_name)
            if (config.rest_period or 0) <= 0:
                return False

            last_rest = self._rest_states.get(session_name, 0)
            return self._now_ms() - last_rest >= REST_INTERVAL_MS
        except ConfigMissing:
            return False
        except Exception as e:
            logger.error("Rest period check failed", session_name=session_name, error=str(e))
            return False

    async def apply_rest_period(self, session_name: str) -> int:
        try:
            config = await self._get_config(session_name)
            rest_period = config.rest_period or 0
        except ConfigMissing:
            return 0
        except Exception as e:
            logger.error("Rest period lookup failed", session_name=session_name, error=str(e))
            return 0

        if rest_period <= 0:
            return 0

        self._rest_states[session_name] = self._now_ms()
        logger.info("Applying rest period", session_name=session_name, rest_ms=rest_period)
        await self.delays.sleep(session_name, rest_period, kind="rest")
        return rest_period

    # =======================================================================
    # HOUSEKEEPING
    # =======================================================================

    def clear_active_delays(self, session_name: str | None = None) -> int:
        cancelled = self.delays.cancel(session_name)
        if cancelled:
            logger.info("Active delays cleared", session_name=session_name, cancelled=cancelled)
        return cancelled

    def purge_expired(self) -> dict[str, int]:
        now = self._now_ms()

        expired_windows = [
            phone
            for phone, window in self._rate_windows.items()
            if now - window.window_start > self.window_ms
        ]
        for phone in expired_windows:
            del self._rate_windows[phone]

        expired_rests = [
            name for name, last_rest in self._rest_states.items() if now - last_rest > self.window_ms
        ]
        for name in expired_rests:
            del self._rest_states[name]

        result = {"rate_windows": len(expired_windows), "rest_states": len(expired_rests)}
        logger.info("Timing data purged", **result)
        return result

    async def run_purge_loop(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or settings.TIMING_PURGE_INTERVAL
        logger.info("Starting timing purge loop", interval_seconds=interval)

        while True:
            await asyncio.sleep(interval)
            try:
                self.purge_expired()
            except Exception as e:
                logger.error("Timing purge failed", error=str(e), error_type=type(e).__name__)

    async def get_timing_stats(self, session_name: str) -> dict[str, Any]:
        try:
            config = await self.config_source.get_timing_config(session_name)
        except Exception as e:
            logger.error("Timing stats config lookup failed", session_name=session_name, error=str(e))
            config = None

        return {
            "session_name": session_name,
            "current_time": datetime.now(UTC).isoformat(),
            "within_working_hours": await self.is_within_working_hours(session_name),
            "active_delays": self.delays.active_count(session_name=session_name),
            "active_typing_simulations": self.delays.active_count(
                kind="typing", session_name=session_name
            ),
            "tracked_users": len(self._rate_windows),
            "config": config.model_dump() if config else {},
            "user_limits": [
                {
                    "phone": window.phone,
                    "messages_in_window": window.message_count,
                    "window_start": _ms_to_iso(window.window_start),
                    "last_message": _ms_to_iso(window.last_message),
                }
                for window in self._rate_windows.values()
            ],
        }


def _ms_to_iso(value_ms: float) -> str:
    return datetime.fromtimestamp(value_ms / 1000, UTC).isoformat()
