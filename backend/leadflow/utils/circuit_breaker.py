# /leadflow/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised instead of calling the protected function while the circuit is open."""

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker is OPEN for {name}")
        self.name = name


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Process-local breaker, used where there is no shared Redis state (e.g. Redis itself)."""

    def __init__(self, name: str = "local", failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: float | None = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self.last_failure_time and (time.monotonic() - self.last_failure_time > self.timeout):
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info(f"Circuit breaker '{self.name}' is now HALF_OPEN")
                else:
                    raise CircuitOpenError(self.name)
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    logger.info(f"Circuit breaker '{self.name}' has been reset to CLOSED.")
            else:
                self.failure_count = 0

    async def _on_failure(self):
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.monotonic()
            if self.failure_count >= self.failure_threshold and self.state != CircuitState.OPEN:
                self.state = CircuitState.OPEN
                logger.error(f"Circuit breaker '{self.name}' has OPENED after {self.failure_count} failures.")


class RedisCircuitBreaker:
    """
    Breaker whose state lives in a Redis hash, so every API worker and the
    scheduler process share one view of an outbound dependency's health.

    Calls may pass a `scope` (e.g. the host of a customer webhook) so a single
    broken endpoint only opens its own circuit and not the whole service's.
    """

    def __init__(self, redis_client: Any, service_name: str, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.redis = redis_client
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold

    def _key(self, scope: Optional[str]) -> str:
        return f"cb:{self.service_name}:{scope}" if scope else f"cb:{self.service_name}"

    def _label(self, scope: Optional[str]) -> str:
        return f"{self.service_name}[{scope}]" if scope else self.service_name

    async def _read(self, key: str) -> Dict[str, str]:
        raw = await self.redis.hgetall(key) or {}
        return {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }

    async def is_open(self, scope: Optional[str] = None) -> bool:
        if not self.redis:
            return False
        key = self._key(scope)
        try:
            state = await self._read(key)
            if state.get("state") != CircuitState.OPEN.value:
                return False
            opened_at = float(state.get("opened_at") or 0)
            if time.time() - opened_at > self.timeout:
                await self.redis.hset(key, mapping={"state": CircuitState.HALF_OPEN.value, "successes": 0})
                logger.info(f"Circuit breaker for {self._label(scope)} is now HALF_OPEN")
                return False
            return True
        except Exception as e:
            logger.error(f"Could not check circuit breaker state for {self._label(scope)}: {e}")
            return False

    async def call(self, func: Callable, *args: Any, scope: Optional[str] = None, **kwargs: Any) -> Any:
        if not self.redis:
            return await func(*args, **kwargs)

        if await self.is_open(scope):
            raise CircuitOpenError(self._label(scope))

        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._on_failure(scope)
            raise
        await self._on_success(scope)
        return result

    async def snapshot(self, scope: Optional[str] = None) -> str:
        """Current state name, for health reporting."""
        if not self.redis:
            return "disabled"
        try:
            state = await self._read(self._key(scope))
        except Exception as e:
            logger.error(f"Could not read circuit breaker state for {self._label(scope)}: {e}")
            return "unknown"
        return state.get("state", CircuitState.CLOSED.value)

    async def _on_success(self, scope: Optional[str]):
        key = self._key(scope)
        try:
            state = await self._read(key)
            if state.get("state") == CircuitState.HALF_OPEN.value:
                successes = await self.redis.hincrby(key, "successes", 1)
                if successes >= self.success_threshold:
                    await self.redis.delete(key)
                    logger.info(f"Circuit breaker has been reset to CLOSED for {self._label(scope)}")
            elif state.get("failures"):
                await self.redis.hset(key, "failures", 0)
        except Exception as e:
            logger.error(f"Error in circuit breaker success handler for {self._label(scope)}: {e}")

    async def _on_failure(self, scope: Optional[str]):
        key = self._key(scope)
        try:
            failures = await self.redis.hincrby(key, "failures", 1)
            state = await self._read(key)
            if state.get("state") == CircuitState.HALF_OPEN.value or failures >= self.failure_threshold:
                await self.redis.hset(key, mapping={"state": CircuitState.OPEN.value, "opened_at": str(time.time())})
                logger.error(f"Circuit breaker has OPENED for {self._label(scope)} after {failures} failures.")
            await self.redis.expire(key, self.timeout * 2)
        except Exception as e:
            logger.error(f"Error in circuit breaker failure handler for {self._label(scope)}: {e}")
