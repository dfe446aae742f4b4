#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
async_adapter.py - Async execution primitives for the triview pipeline

This module provides:
- BoundedExecutor: FIFO semaphore capping in-flight row tasks, released structurally
- RetryController: pattern-table error classification with exponential backoff
- AsyncLLMClient: aiohttp OpenAI-compatible client with step routing and fallback

Retry classification is driven by RETRY_RULES, an ordered (pattern, retryable)
table matched against "<ExceptionType>: <message>". First match wins; an error
matching nothing is fatal.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import aiohttp

from .runtime_adapter import (
    LLMError,
    LLMRouter,
    _estimate_cost,
    _estimate_tokens,
    _extract_usage,
    _trace,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONCURRENCY = 6
MAX_RETRIES = 3
BASE_DELAY_S = 1.0

# ============================================================================
# Bounded Executor
# ============================================================================


class BoundedExecutor:
    """
    Caps concurrent in-flight units of work.

    asyncio.Semaphore wakes waiters in FIFO order. Use `async with executor.slot():`
    so the permit is released on every exit path.
    """

    def __init__(self, capacity: int = DEFAULT_CONCURRENCY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self.in_flight = 0
        self.peak_in_flight = 0
        self.completed = 0

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)

    def release(self) -> None:
        self.in_flight -= 1
        self.completed += 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.slot():
            return await fn()


# ============================================================================
# Retry Controller
# ============================================================================

# Ordered: fatal overrides first, then transient signatures.
RETRY_RULES: List[Tuple[str, bool]] = [
    (r"invalid scripture reference", False),
    (r"scripture verification failed", False),
    (r"semantic guard failed", False),
    (r"quality assessment failed", False),
    (r"econnreset|connection reset|connectionreseterror|connection aborted", True),
    (r"etimedout|timed out|timeout", True),
    (r"enotfound|name or service not known|temporary failure in name resolution|getaddrinfo|dns", True),
    (r"network request failed|socket hang up|server disconnected|cannot connect to host", True),
    (r"\b429\b|too many requests|rate limit", True),
    (r"\b502\b|bad gateway", True),
    (r"\b503\b|service (temporarily )?unavailable", True),
    (r"\b504\b|gateway timeout", True),
    (r"internal (server )?error", True),
]


def describe_error(error: BaseException) -> str:
    """Normalized description used for classification."""
    return f"{type(error).__name__}: {error}".lower()


def classify_error(error: BaseException,
                   rules: Optional[List[Tuple[str, bool]]] = None) -> Optional[str]:
    """Return the first matching pattern if the error is retryable, else None."""
    description = describe_error(error)
    for pattern, retryable in (rules if rules is not None else RETRY_RULES):
        if re.search(pattern, description):
            return pattern if retryable else None
    return None


def is_retryable(error: BaseException, rules: Optional[List[Tuple[str, bool]]] = None) -> bool:
    return classify_error(error, rules) is not None


@dataclass
class RetryStats:
    attempts: int = 0
    retries: int = 0
    delays: Tuple[float, ...] = ()


class RetryController:
    """
    Retries transient failures with exponential backoff.

    One initial attempt plus up to max_retries retries; the delay before retry n
    is base_delay * 2^(n-1). After the last retry the original error propagates.
    """

    def __init__(self, max_retries: int = MAX_RETRIES, base_delay: float = BASE_DELAY_S,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rules: Optional[List[Tuple[str, bool]]] = None):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.rules = rules if rules is not None else RETRY_RULES

    def delay_for(self, retry: int) -> float:
        return self.base_delay * (2 ** (retry - 1))

    async def run(self, fn: Callable[[], Awaitable[T]], label: str = "",
                  stats: Optional[RetryStats] = None) -> T:
        stats = stats if stats is not None else RetryStats()
        retry = 0
        while True:
            stats.attempts += 1
            try:
                return await fn()
            except Exception as e:
                matched = classify_error(e, self.rules)
                if matched is None or retry >= self.max_retries:
                    if matched is not None:
                        logger.error("Giving up on %s after %d attempts: %s", label, stats.attempts, e)
                    raise
                retry += 1
                delay = self.delay_for(retry)
                stats.retries = retry
                stats.delays = stats.delays + (delay,)
                logger.warning("Retryable error on %s (attempt %d/%d), retrying in %.1fs: %s",
                               label, retry, self.max_retries, delay, e)
                _trace({"type": "retry", "label": label, "retry": retry,
                        "delay_s": delay, "pattern": matched, "error": str(e)[:300]})
                await self.sleep(delay)


# ============================================================================
# Async LLM Client
# ============================================================================


@dataclass
class AsyncLLMResult:
    """Result of an async LLM call."""
    text: str
    latency_ms: int
    model: str
    prompt_tokens: int
    completion_tokens: int
    usage_source: str
    cost_usd_est: float
    request_id: Optional[str] = None


class AsyncLLMClient:
    """
    Asynchronous OpenAI-compatible chat client.

    Features:
    - Connection pooling via one aiohttp session
    - Step-based model chain from LLMRouter, falling back on router triggers
    - Usage extraction with chars/4 estimation when the gateway omits usage

    Usage:
        async with AsyncLLMClient() as client:
            result = await client.chat(system="...", user="...", step="translate")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_s: Optional[int] = None,
        router: Optional[LLMRouter] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or os.getenv("LLM_BASE_URL", "")).strip().rstrip("/")
        self.api_key = (api_key or self._load_api_key()).strip()
        self.default_model = (model or os.getenv("LLM_MODEL", "")).strip()
        self.timeout_s = timeout_s or int(os.getenv("LLM_TIMEOUT_S", "60"))
        self.router = router or LLMRouter()
        self._session = session
        self._owns_session = session is None

    def _load_api_key(self) -> str:
        """Load API key with file-based injection support."""
        key_file = os.getenv("LLM_API_KEY_FILE", "").strip()
        if key_file and os.path.exists(key_file):
            with open(key_file, 'r', encoding='utf-8') as f:
                content = f.read().strip()
            for line in content.splitlines():
                line = line.strip()
                if line.lower().startswith(("api key:", "api_key:")):
                    return line.split(":", 1)[1].strip()
            if content and '\n' not in content and ':' not in content:
                return content
        return os.getenv("LLM_API_KEY", "")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s, connect=10)
            conn = aiohttp.TCPConnector(limit=100, limit_per_host=20, enable_cleanup_closed=True)
            self._session = aiohttp.ClientSession(
                connector=conn,
                timeout=timeout,
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the client session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def model_chain(self, step: str) -> List[str]:
        chain = self.router.get_model_chain(step) if self.router.enabled else []
        if not chain and self.default_model:
            chain = [self.default_model]
        return chain

    async def chat(self, system: str, user: str, step: str = "_default",
                   temperature: Optional[float] = None,
                   max_tokens: Optional[int] = None) -> AsyncLLMResult:
        """Send a chat completion, walking the model chain on fallback-worthy errors."""
        if not self.base_url or not self.api_key:
            raise LLMError(
                "config",
                "Missing LLM configuration. Set env vars: LLM_BASE_URL, LLM_API_KEY",
                retryable=False
            )

        chain = self.model_chain(step)
        if not chain:
            raise LLMError("config", f"No model configured for step '{step}'", retryable=False)

        params = self.router.get_generation_params(step) if self.router.enabled else {}
        final_temp = temperature if temperature is not None else params.get("temperature", 0.2)
        final_max_tokens = max_tokens if max_tokens is not None else params.get("max_tokens")

        for attempt_no, model in enumerate(chain):
            try:
                return await self._call_single_model(
                    model, system, user, final_temp, final_max_tokens, step, attempt_no
                )
            except LLMError as e:
                _trace({"type": "llm_error", "kind": e.kind, "msg": str(e)[:500], "step": step,
                        "selected_model": model, "attempt_no": attempt_no,
                        "http_status": e.http_status})
                if attempt_no < len(chain) - 1 and self.router.should_fallback(e):
                    continue
                raise
        raise LLMError("config", "No models available", retryable=False)

    async def _call_single_model(self, model: str, system: str, user: str,
                                 temperature: float, max_tokens: Optional[int],
                                 step: str, attempt_no: int) -> AsyncLLMResult:
        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload: Dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens

        session = await self._get_session()
        t0 = time.time()
        try:
            async with session.post(url, headers=headers, json=payload) as resp:
                latency_ms = int((time.time() - t0) * 1000)

                if resp.status in (429, 500, 502, 503, 504):
                    text = await resp.text()
                    raise LLMError(
                        "upstream",
                        f"Upstream error HTTP {resp.status} {resp.reason or ''}: {text[:200]}",
                        retryable=True,
                        http_status=resp.status
                    )
                if resp.status >= 400:
                    text = await resp.text()
                    raise LLMError(
                        "http",
                        f"HTTP error {resp.status}: {text[:200]}",
                        retryable=False,
                        http_status=resp.status
                    )

                try:
                    data = await resp.json()
                    text_content = data["choices"][0]["message"]["content"]
                except (aiohttp.ContentTypeError, ValueError, KeyError, IndexError, TypeError) as e:
                    raise LLMError("parse", f"Response parse error: {e}", retryable=False)
        except asyncio.TimeoutError as e:
            raise LLMError("timeout", f"Request timed out after {self.timeout_s}s", retryable=True) from e
        except aiohttp.ClientError as e:
            raise LLMError("network", f"Network error: {type(e).__name__}: {e}", retryable=True) from e

        usage = _extract_usage(data)
        if usage and usage.get("prompt_tokens"):
            prompt_tokens = usage["prompt_tokens"]
            completion_tokens = usage.get("completion_tokens", 0)
            usage_source = "api_usage"
        else:
            prompt_tokens = _estimate_tokens(system) + _estimate_tokens(user)
            completion_tokens = _estimate_tokens(text_content or "")
            usage_source = "local_estimate"

        cost_usd_est = _estimate_cost(model, prompt_tokens, completion_tokens)
        _trace({
            "type": "llm_call_async",
            "ts": datetime.now().isoformat(),
            "step": step,
            "request_id": data.get("id"),
            "latency_ms": latency_ms,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "usage_source": usage_source,
            "cost_usd_est": cost_usd_est,
            "selected_model": model,
            "attempt_no": attempt_no,
        })

        return AsyncLLMResult(
            text=(text_content or "").strip(),
            latency_ms=latency_ms,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            usage_source=usage_source,
            cost_usd_est=cost_usd_est,
            request_id=data.get("id"),
        )
