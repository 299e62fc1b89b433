import logging

from ..db.kv_store import KeyValueStore, now_ms
from ..db.schema import POLICIES_TABLE, RATE_LIMITS_TABLE
from ..errors import PolicyStoreError
from ..models.policy import EnforcementRequest, EnforcementResult, Policy, RateLimitCounter

logger = logging.getLogger(__name__)

POLICY_SORT_KEY = "policy"
COUNTER_SORT_KEY = "counter"


class PolicyService:
    """Per-user access policy and fixed-window rate limiting.

    Policy lookup never fails the caller: a missing record or a store error
    yields the default policy, and the checks in ``enforce`` still run
    against it.
    """

    def __init__(self, store: KeyValueStore, settings):
        self.store = store
        self.settings = settings
        self.window_ms = settings.rate_limit_window_ms

    def default_policy(self, user_id: str) -> Policy:
        now = now_ms()
        return Policy(
            user_id=user_id,
            allowed_capabilities=list(self.settings.default_capabilities),
            isolation_mode=self.settings.default_isolation_mode,
            request_budget=self.settings.default_request_budget,
            token_budget=self.settings.default_token_budget,
            created_at=now,
            updated_at=now,
        )

    async def get_policy(self, user_id: str) -> Policy:
        logger.info("Getting policy user=%s", user_id)
        try:
            item = await self.store.get(POLICIES_TABLE, user_id, POLICY_SORT_KEY)
            if item:
                policy = Policy.model_validate(item)
                logger.debug("Custom policy found user=%s capabilities=%s isolation=%s",
                             user_id, policy.allowed_capabilities, policy.isolation_mode)
                return policy
        except Exception as e:
            logger.error("Error loading policy user=%s, using default: %s", user_id, e)
            return self.default_policy(user_id)

        logger.debug("Using default policy user=%s", user_id)
        return self.default_policy(user_id)

    async def save_policy(self, policy: Policy) -> Policy:
        logger.info("Saving policy user=%s capabilities=%s isolation=%s",
                    policy.user_id, policy.allowed_capabilities, policy.isolation_mode)
        now = now_ms()
        saved = policy.model_copy(update={
            "updated_at": now,
            "created_at": policy.created_at or now,
        })
        try:
            await self.store.put(POLICIES_TABLE, policy.user_id, POLICY_SORT_KEY, saved.model_dump())
        except Exception as e:
            logger.error("Error saving policy user=%s: %s", policy.user_id, e)
            raise PolicyStoreError(f"Failed to save policy for user {policy.user_id}") from e
        return saved

    async def enforce(self, policy: Policy, request: EnforcementRequest) -> EnforcementResult:
        """Rate limit, then capability, then isolation; first failure wins."""
        logger.info("Enforcing policy user=%s capability=%s isolation=%s",
                    request.user_id, request.capability, policy.isolation_mode)

        rate = await self.check_rate_limit(policy)
        if not rate.allowed:
            return rate

        if request.capability and request.capability not in policy.allowed_capabilities:
            logger.warning("Capability denied user=%s capability=%s allowed=%s",
                           request.user_id, request.capability, policy.allowed_capabilities)
            return EnforcementResult(
                allowed=False,
                reason=f"access to capability '{request.capability}' is not permitted",
            )

        if (
            policy.isolation_mode == "strict"
            and request.target_user_id
            and request.target_user_id != request.user_id
        ):
            logger.warning("Data isolation violation user=%s target=%s",
                           request.user_id, request.target_user_id)
            return EnforcementResult(
                allowed=False,
                reason="isolation violation: cannot access data belonging to other users",
            )

        logger.debug("Policy enforcement passed user=%s remaining=%s", request.user_id, rate.remaining)
        return EnforcementResult(allowed=True, remaining=rate.remaining)

    async def check_rate_limit(self, policy: Policy) -> EnforcementResult:
        """Fixed window keyed by user. Counts the request when it is allowed.

        The counter is read, then written; concurrent requests for one user
        can over- or under-count. A store failure lets the request through.
        """
        user_id = policy.user_id
        budget = policy.request_budget
        now = now_ms()

        try:
            item = await self.store.get(RATE_LIMITS_TABLE, user_id, COUNTER_SORT_KEY)
            counter = RateLimitCounter.model_validate(item) if item else None

            if counter is None or not (counter.window_start <= now < counter.window_start + self.window_ms):
                counter = self._new_counter(user_id, now, count=1)
                await self.store.put(RATE_LIMITS_TABLE, user_id, COUNTER_SORT_KEY,
                                     counter.model_dump(), expires_at=counter.expires_at)
                logger.debug("Rate limit window opened user=%s budget=%d", user_id, budget)
                return EnforcementResult(allowed=True, remaining=budget - 1)

            if counter.count >= budget:
                logger.warning("Rate limit exceeded user=%s count=%d budget=%d",
                               user_id, counter.count, budget)
                return EnforcementResult(
                    allowed=False,
                    reason=f"rate limit exceeded: {budget} requests per {self.window_ms // 1000}s window",
                    remaining=0,
                )

            count = counter.count + 1
            await self.store.update(RATE_LIMITS_TABLE, user_id, COUNTER_SORT_KEY, {"count": count})
            logger.debug("Rate limit updated user=%s count=%d budget=%d", user_id, count, budget)
            return EnforcementResult(allowed=True, remaining=budget - count)
        except Exception as e:
            logger.error("Error checking rate limit user=%s, allowing request: %s", user_id, e)
            return EnforcementResult(allowed=True, reason="rate limit check failed, allowing request")

    async def reset_rate_limit(self, user_id: str) -> RateLimitCounter:
        logger.info("Resetting rate limit user=%s", user_id)
        counter = self._new_counter(user_id, now_ms(), count=0)
        try:
            await self.store.put(RATE_LIMITS_TABLE, user_id, COUNTER_SORT_KEY,
                                 counter.model_dump(), expires_at=counter.expires_at)
        except Exception as e:
            logger.error("Error resetting rate limit user=%s: %s", user_id, e)
            raise PolicyStoreError(f"Failed to reset rate limit for user {user_id}") from e
        return counter

    def _new_counter(self, user_id: str, now: int, count: int) -> RateLimitCounter:
        return RateLimitCounter(
            user_id=user_id,
            window_start=now,
            count=count,
            expires_at=now + 2 * self.window_ms,
        )
