"""
Duty Pharmacy Registry — API key tiers

Callers identify with an X-API-Key header. Keys are never stored: the
environment carries bcrypt hashes, each tagged with the tier it grants.

    DUTY_ADMIN_KEY_HASHES="operator:$2b$12$...,admin:$2b$12$..."

A hash without a "tier:" prefix grants admin. Tiers are ordered
public < operator < admin; a route asks for a minimum tier through
require_tier().

bcrypt is slow by design, so verified keys are remembered for five
minutes under their SHA-256 digest.

Generate a hash with:

    python -c "import bcrypt; print(bcrypt.hashpw(b'<key>', bcrypt.gensalt()).decode())"
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable

import bcrypt
from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import RequestResponseEndpoint

logger = logging.getLogger(__name__)

TIER_HIERARCHY = {
    "public": 0,
    "operator": 1,
    "admin": 2,
}


@dataclass(frozen=True)
class AuthContext:
    """Who is calling; stored on request.state.auth."""

    tier: str = "public"
    actor_id: str = "anonymous"
    actor_type: str = "anonymous"

    def at_least(self, tier: str) -> bool:
        return TIER_HIERARCHY.get(self.tier, 0) >= TIER_HIERARCHY.get(tier, 0)


ANONYMOUS = AuthContext()


def _load_key_hashes() -> list[tuple[str, bytes]]:
    """Parse DUTY_ADMIN_KEY_HASHES; entries with an unknown tier are skipped."""
    entries = []
    for raw in os.environ.get("DUTY_ADMIN_KEY_HASHES", "").split(","):
        raw = raw.strip()
        if not raw:
            continue
        tier, sep, hashed = raw.partition(":")
        if not sep:
            tier, hashed = "admin", raw
        if tier not in TIER_HIERARCHY:
            logger.warning("Auth: ignoring key hash with unknown tier %r", tier)
            continue
        entries.append((tier, hashed.encode("utf-8")))
    return entries


_KEY_HASHES: list[tuple[str, bytes]] = _load_key_hashes()


def reload_keys() -> int:
    """Re-read the key hashes after rotation; drops every cached key."""
    global _KEY_HASHES
    _KEY_HASHES = _load_key_hashes()
    clear_cache()
    logger.info("Auth: %d key hashes loaded", len(_KEY_HASHES))
    return len(_KEY_HASHES)


# ---- verified-key cache -----------------------------------------------------

_CACHE_TTL = 300
_cache_lock = threading.Lock()
_verified: dict[str, tuple[AuthContext, float]] = {}


def _digest(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _cache_get(api_key: str) -> AuthContext | None:
    digest = _digest(api_key)
    with _cache_lock:
        hit = _verified.get(digest)
        if hit is None:
            return None
        ctx, verified_at = hit
        if time.monotonic() - verified_at > _CACHE_TTL:
            del _verified[digest]
            return None
        return ctx


def _cache_set(api_key: str, ctx: AuthContext) -> None:
    with _cache_lock:
        _verified[_digest(api_key)] = (ctx, time.monotonic())


def clear_cache() -> None:
    with _cache_lock:
        _verified.clear()


def _validate_key(api_key: str) -> AuthContext | None:
    """
    Check *api_key* against the configured hashes.

    When one key was registered under several tiers the highest one wins.
    Malformed hashes are logged and skipped.
    """
    key_bytes = api_key.encode("utf-8")
    granted: str | None = None
    for tier, hashed in _KEY_HASHES:
        if granted is not None and TIER_HIERARCHY[tier] <= TIER_HIERARCHY[granted]:
            continue
        try:
            if bcrypt.checkpw(key_bytes, hashed):
                granted = tier
        except ValueError as e:
            logger.warning("Auth: malformed key hash skipped: %s", e)

    if granted is None:
        return None
    return AuthContext(tier=granted, actor_id=f"apikey:{_digest(api_key)[:8]}", actor_type="api_user")


# ---- middleware and dependencies --------------------------------------------


async def auth_middleware(request: Request, call_next: RequestResponseEndpoint) -> Response:
    """
    Attach an AuthContext to every request.

    No key means anonymous public access; a key that matches nothing is
    rejected with 401 before any route runs.
    """
    api_key = request.headers.get("X-API-Key", "").strip()
    if not api_key:
        request.state.auth = ANONYMOUS
        return await call_next(request)

    ctx = _cache_get(api_key)
    if ctx is None:
        ctx = _validate_key(api_key)
        if ctx is None:
            logger.info("Auth: rejected key for %s %s", request.method, request.url.path)
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid API key"},
                headers={"WWW-Authenticate": "ApiKey"},
            )
        _cache_set(api_key, ctx)

    request.state.auth = ctx
    return await call_next(request)


def current_actor(request: Request) -> AuthContext:
    return getattr(request.state, "auth", ANONYMOUS)


def require_tier(min_tier: str) -> Callable:
    """
    Route dependency: 401 for anonymous callers, 403 for keys below *min_tier*.

        @router.post("/api/admin/...", dependencies=[Depends(require_tier("admin"))])
    """

    async def _check(request: Request) -> None:
        ctx = current_actor(request)
        if ctx.at_least(min_tier):
            return
        if ctx is ANONYMOUS or ctx.actor_type == "anonymous":
            raise HTTPException(
                status_code=401,
                detail="Authentication required. Provide an API key via the X-API-Key header.",
            )
        raise HTTPException(
            status_code=403,
            detail=f"Insufficient permissions. Required tier: {min_tier}, your tier: {ctx.tier}",
        )

    return _check
