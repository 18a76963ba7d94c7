from .otp import (
    OTPConfig,
    OTPError,
    StoreUnavailableError,
    Challenge,
    ConsumeResult,
    ChallengeStore,
    MemoryChallengeStore,
    RedisChallengeStore,
    build_challenge_store,
    generate_otp_code,
    is_well_formed_code,
)
from .rate_limit import (
    RateLimitDecision,
    PhoneRateLimiter,
    MemoryPhoneRateLimiter,
    RedisPhoneRateLimiter,
    build_phone_rate_limiter,
    SlidingWindowLimiter,
    RedisRateLimiter,
)
from .notifier import (
    NotifierBackend,
    NotifierConfig,
    NotifierError,
    resolve_backend as resolve_notifier,
)
from .env import env_bool, env_float, env_int, env_list
from .phone_utils import (
    NormalizationError,
    NormalizationErrorKind,
    PhoneNumber,
    mask_phone,
    normalize_phone,
    normalize_phone_e164,
    resolve_region,
)

__all__ = [
    "OTPConfig",
    "OTPError",
    "StoreUnavailableError",
    "Challenge",
    "ConsumeResult",
    "ChallengeStore",
    "MemoryChallengeStore",
    "RedisChallengeStore",
    "build_challenge_store",
    "generate_otp_code",
    "is_well_formed_code",
    "RateLimitDecision",
    "PhoneRateLimiter",
    "MemoryPhoneRateLimiter",
    "RedisPhoneRateLimiter",
    "build_phone_rate_limiter",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
    "NotifierBackend",
    "NotifierConfig",
    "NotifierError",
    "resolve_notifier",
    "env_bool",
    "env_float",
    "env_int",
    "env_list",
    "NormalizationError",
    "NormalizationErrorKind",
    "PhoneNumber",
    "mask_phone",
    "normalize_phone",
    "normalize_phone_e164",
    "resolve_region",
]
