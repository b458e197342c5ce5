from __future__ import annotations

import asyncio
import functools
import json
import math
from datetime import datetime
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from deskgate.logging import get_logger, sanitize_error_message
from deskgate.service.errors import StorageUnavailableError
from deskgate.storage.common import (
    IssuanceDecision,
    IssuancePolicy,
    deserialize_admin_role,
    deserialize_attempt,
    deserialize_mfa_record,
    deserialize_session,
    from_epoch,
    serialize_admin_role,
    serialize_attempt,
    serialize_mfa_record,
    serialize_session,
    to_epoch,
    to_iso,
)
from deskgate.storage.models import (
    AdminRole,
    MFARecord,
    ResendCounter,
    Session,
    SignInAttempt,
    normalize_email,
)

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "auth:session:"


def _storage_call(func):
    """Surface Redis failures as StorageUnavailableError; details go to the log."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "redis_operation_failed",
                operation=func.__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise StorageUnavailableError() from exc

    return wrapper


def _ttl_between(start: datetime, end: datetime) -> int:
    return max(1, math.ceil((end - start).total_seconds()))


class RedisStore:
    """Shared backing store; every multi-step update is one Lua script per key.

    Clock values are passed in from the service layer rather than read from
    the Redis server so all instances and tests agree on "now".
    """

    # Cooldown/ceiling check-and-increment. Returns
    # {allowed, reason, remaining, count, prev_count, prev_window, prev_last}
    _RESERVE_ISSUANCE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local cooldown = tonumber(ARGV[2])
local max_issuances = tonumber(ARGV[3])
local window = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'count', 'window_started', 'last_issued')
local count = tonumber(data[1])
local window_started = tonumber(data[2])
local last_issued = tonumber(data[3])
local prev = {data[1] or '', data[2] or '', data[3] or ''}
local window_arg = ARGV[1]

if count == nil or window_started == nil or last_issued == nil
   or (now - window_started) >= window then
  count = nil
end

if count ~= nil then
  local since_last = now - last_issued
  if since_last < cooldown then
    return {0, 'cooldown', math.max(1, math.ceil(cooldown - since_last)), count, '', '', ''}
  end
  if count >= max_issuances then
    local left = window - (now - window_started)
    return {0, 'limit', math.max(1, math.ceil(left)), count, '', '', ''}
  end
  count = count + 1
  window_arg = data[2]
else
  count = 1
  prev = {'', '', ''}
end

redis.call('HSET', key, 'count', count, 'window_started', window_arg, 'last_issued', ARGV[1])
redis.call('EXPIRE', key, math.max(1, math.ceil(window)))
return {1, '', 0, count, prev[1], prev[2], prev[3]}
"""

    # Undo a reservation only if no later issuance has replaced it
    _RELEASE_ISSUANCE_SCRIPT = """
local current = redis.call('HGET', KEYS[1], 'last_issued')
if not current or tonumber(current) ~= tonumber(ARGV[1]) then
  return 0
end
if ARGV[2] == '' then
  redis.call('DEL', KEYS[1])
else
  redis.call('HSET', KEYS[1], 'count', ARGV[2], 'window_started', ARGV[3], 'last_issued', ARGV[4])
end
return 1
"""

    _REPLACE_RECORD_SCRIPT = """
local previous = redis.call('GET', KEYS[1])
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
return previous
"""

    # Conditional pop: only the caller holding the matching code removes it
    _CONSUME_RECORD_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local record = cjson.decode(raw)
if record['consumed'] == true or record['code'] ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
return 1
"""

    _DELETE_RECORD_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
if ARGV[1] ~= '' then
  local record = cjson.decode(raw)
  if record['code'] ~= ARGV[1] then
    return 0
  end
end
redis.call('DEL', KEYS[1])
return 1
"""

    _ENSURE_ADMIN_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'NX')
return redis.call('GET', KEYS[1])
"""

    # End every active session in the principal's set, then insert the new one.
    # KEYS: principal set, new session key, token index key
    # ARGV: session json, session id, ended_at, reason, ttl, history ttl, key prefix
    _START_SESSION_SCRIPT = """
if redis.call('EXISTS', KEYS[3]) == 1 then
  return redis.error_reply('session token collision')
end
local ended = {}
local ids = redis.call('SMEMBERS', KEYS[1])
for _, sid in ipairs(ids) do
  local skey = ARGV[7] .. sid
  local raw = redis.call('GET', skey)
  if raw then
    local s = cjson.decode(raw)
    if s['active'] == true then
      s['active'] = false
      s['ended_at'] = ARGV[3]
      s['end_reason'] = ARGV[4]
      local encoded = cjson.encode(s)
      redis.call('SET', skey, encoded, 'EX', ARGV[6])
      table.insert(ended, encoded)
    end
  else
    redis.call('SREM', KEYS[1], sid)
  end
end
redis.call('SET', KEYS[2], ARGV[1], 'EX', ARGV[5])
redis.call('SET', KEYS[3], ARGV[2], 'EX', ARGV[5])
redis.call('SADD', KEYS[1], ARGV[2])
redis.call('EXPIRE', KEYS[1], math.max(tonumber(ARGV[5]), tonumber(ARGV[6])))
return ended
"""

    # ARGV: ended_at, reason, history ttl
    _END_SESSION_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return nil
end
local s = cjson.decode(raw)
if s['active'] ~= true then
  return raw
end
s['active'] = false
s['ended_at'] = ARGV[1]
s['end_reason'] = ARGV[2]
local encoded = cjson.encode(s)
redis.call('SET', KEYS[1], encoded, 'EX', ARGV[3])
return encoded
"""

    # KEYS: principal set; ARGV: ended_at, reason, history ttl, key prefix
    _END_PRINCIPAL_SESSIONS_SCRIPT = """
local ended = 0
local ids = redis.call('SMEMBERS', KEYS[1])
for _, sid in ipairs(ids) do
  local skey = ARGV[4] .. sid
  local raw = redis.call('GET', skey)
  if raw then
    local s = cjson.decode(raw)
    if s['active'] == true then
      s['active'] = false
      s['ended_at'] = ARGV[1]
      s['end_reason'] = ARGV[2]
      redis.call('SET', skey, cjson.encode(s), 'EX', ARGV[3])
      ended = ended + 1
    end
  else
    redis.call('SREM', KEYS[1], sid)
  end
end
return ended
"""

    _TOUCH_SESSION_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local s = cjson.decode(raw)
if s['active'] ~= true then
  return 0
end
s['last_seen_at'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(s), 'KEEPTTL')
return 1
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        history_seconds: int = 7 * 24 * 3600,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.history_seconds = history_seconds
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup with a short-lived sync client."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _code_key(email: str) -> str:
        return f"mfa:code:{normalize_email(email)}"

    @staticmethod
    def _resend_key(email: str) -> str:
        return f"mfa:resend:{normalize_email(email)}"

    @staticmethod
    def _attempt_key(email: str) -> str:
        return f"auth:attempt:{normalize_email(email)}"

    @staticmethod
    def _admin_key(principal_id: str) -> str:
        return f"auth:admin:{principal_id}"

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    @staticmethod
    def _token_key(token_hash: str) -> str:
        return f"auth:session_token:{token_hash}"

    @staticmethod
    def _principal_sessions_key(principal_id: str) -> str:
        return f"auth:principal_sessions:{principal_id}"

    # one-time codes
    @_storage_call
    async def replace_mfa_record(self, record: MFARecord) -> Optional[MFARecord]:
        payload = serialize_mfa_record(record)
        payload["email"] = normalize_email(record.email)
        previous = await self.client.eval(
            self._REPLACE_RECORD_SCRIPT,
            1,
            self._code_key(record.email),
            json.dumps(payload),
            _ttl_between(record.issued_at, record.expires_at),
        )
        return deserialize_mfa_record(json.loads(previous)) if previous else None

    @_storage_call
    async def get_mfa_record(self, email: str) -> Optional[MFARecord]:
        raw = await self.client.get(self._code_key(email))
        if not raw:
            return None
        try:
            return deserialize_mfa_record(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("mfa_record_corrupt", email=normalize_email(email))
            return None

    @_storage_call
    async def consume_mfa_record(self, email: str, code: str) -> bool:
        result = await self.client.eval(
            self._CONSUME_RECORD_SCRIPT, 1, self._code_key(email), code
        )
        return bool(int(result or 0))

    @_storage_call
    async def delete_mfa_record(self, email: str, *, code: Optional[str] = None) -> bool:
        result = await self.client.eval(
            self._DELETE_RECORD_SCRIPT, 1, self._code_key(email), code or ""
        )
        return bool(int(result or 0))

    # resend counters
    @_storage_call
    async def reserve_issuance(
        self, email: str, now: datetime, policy: IssuancePolicy
    ) -> IssuanceDecision:
        result = await self.client.eval(
            self._RESERVE_ISSUANCE_SCRIPT,
            1,
            self._resend_key(email),
            to_epoch(now),
            policy.cooldown_seconds,
            policy.max_issuances,
            policy.window_seconds,
        )
        allowed, reason, remaining, count, prev_count, prev_window, prev_last = result
        if not int(allowed):
            return IssuanceDecision(
                allowed=False,
                reason=reason or None,
                remaining_seconds=int(remaining),
                count=int(count),
            )
        previous = None
        if prev_count not in (None, ""):
            previous = ResendCounter(
                email=normalize_email(email),
                count=int(prev_count),
                window_started_at=from_epoch(prev_window),
                last_issued_at=from_epoch(prev_last),
            )
        return IssuanceDecision(
            allowed=True, count=int(count), previous=previous, reserved_at=now
        )

    @_storage_call
    async def release_issuance(self, email: str, decision: IssuanceDecision) -> None:
        if decision.reserved_at is None:
            return
        previous = decision.previous
        await self.client.eval(
            self._RELEASE_ISSUANCE_SCRIPT,
            1,
            self._resend_key(email),
            to_epoch(decision.reserved_at),
            previous.count if previous else "",
            to_epoch(previous.window_started_at) if previous else "",
            to_epoch(previous.last_issued_at) if previous else "",
        )

    @_storage_call
    async def reset_resend_counter(self, email: str) -> None:
        await self.client.delete(self._resend_key(email))

    @_storage_call
    async def get_resend_counter(self, email: str) -> Optional[ResendCounter]:
        data = await self.client.hgetall(self._resend_key(email))
        if not data or "count" not in data:
            return None
        return ResendCounter(
            email=normalize_email(email),
            count=int(data["count"]),
            window_started_at=from_epoch(data["window_started"]),
            last_issued_at=from_epoch(data["last_issued"]),
        )

    # sign-in attempts
    @_storage_call
    async def save_attempt(self, attempt: SignInAttempt) -> None:
        payload = serialize_attempt(attempt)
        payload["email"] = normalize_email(attempt.email)
        await self.client.set(
            self._attempt_key(attempt.email),
            json.dumps(payload),
            ex=_ttl_between(attempt.started_at, attempt.expires_at),
        )

    @_storage_call
    async def get_attempt(self, email: str) -> Optional[SignInAttempt]:
        raw = await self.client.get(self._attempt_key(email))
        if not raw:
            return None
        try:
            return deserialize_attempt(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("sign_in_attempt_corrupt", email=normalize_email(email))
            return None

    @_storage_call
    async def delete_attempt(self, email: str) -> None:
        await self.client.delete(self._attempt_key(email))

    # admin roles
    @_storage_call
    async def get_admin_role(self, principal_id: str) -> Optional[AdminRole]:
        raw = await self.client.get(self._admin_key(principal_id))
        return deserialize_admin_role(json.loads(raw)) if raw else None

    @_storage_call
    async def ensure_admin_role(self, role: AdminRole) -> AdminRole:
        stored = await self.client.eval(
            self._ENSURE_ADMIN_SCRIPT,
            1,
            self._admin_key(role.principal_id),
            json.dumps(serialize_admin_role(role)),
        )
        return deserialize_admin_role(json.loads(stored)) if stored else role

    # sessions
    @_storage_call
    async def start_session(self, session: Session) -> List[Session]:
        ended = await self.client.eval(
            self._START_SESSION_SCRIPT,
            3,
            self._principal_sessions_key(session.principal_id),
            self._session_key(session.id),
            self._token_key(session.token_hash),
            json.dumps(serialize_session(session)),
            session.id,
            to_iso(session.started_at),
            "superseded",
            _ttl_between(session.started_at, session.expires_at) + self.history_seconds,
            self.history_seconds,
            SESSION_KEY_PREFIX,
        )
        return [deserialize_session(json.loads(raw)) for raw in ended or []]

    @_storage_call
    async def get_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        session_id = await self.client.get(self._token_key(token_hash))
        if not session_id:
            return None
        raw = await self.client.get(self._session_key(session_id))
        return deserialize_session(json.loads(raw)) if raw else None

    @_storage_call
    async def end_session(
        self, session_id: str, ended_at: datetime, reason: str
    ) -> Optional[Session]:
        raw = await self.client.eval(
            self._END_SESSION_SCRIPT,
            1,
            self._session_key(session_id),
            to_iso(ended_at),
            reason,
            self.history_seconds,
        )
        return deserialize_session(json.loads(raw)) if raw else None

    @_storage_call
    async def end_principal_sessions(
        self, principal_id: str, ended_at: datetime, reason: str
    ) -> int:
        ended = await self.client.eval(
            self._END_PRINCIPAL_SESSIONS_SCRIPT,
            1,
            self._principal_sessions_key(principal_id),
            to_iso(ended_at),
            reason,
            self.history_seconds,
            SESSION_KEY_PREFIX,
        )
        return int(ended or 0)

    @_storage_call
    async def touch_session(self, session_id: str, seen_at: datetime) -> None:
        await self.client.eval(
            self._TOUCH_SESSION_SCRIPT, 1, self._session_key(session_id), to_iso(seen_at)
        )

    @_storage_call
    async def list_sessions(self, principal_id: str) -> List[Session]:
        session_ids = await self.client.smembers(self._principal_sessions_key(principal_id))
        if not session_ids:
            return []
        raws = await self.client.mget([self._session_key(sid) for sid in session_ids])
        sessions = [deserialize_session(json.loads(raw)) for raw in raws if raw]
        return sorted(sessions, key=lambda s: s.started_at)

    @_storage_call
    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.close()
