"""
Runtime configuration for Handback.
Values come from environment variables (optionally loaded from a .env file by app.py).

Environment variables:
- HANDBACK_STORE: 'firestore' (default) or 'memory'
- HANDBACK_HASH_PEPPER: optional server-side secret mixed into answer/code hashes
- HANDBACK_SCRYPT_N: scrypt cost parameter (power of two, default 16384)
- HANDBACK_CLAIM_EXPIRY_DAYS: days without verification activity before a pending claim expires
- HANDBACK_REPORT_EXPIRY_DAYS: days of inactivity before a report expires
- HANDBACK_SCHEDULER_ENABLED: start the background sweeps with the app
"""
import os


def _env_int(name, default):
    raw = os.environ.get(name, '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes')


# Storage backend
STORE_BACKEND = os.environ.get('HANDBACK_STORE', 'firestore').strip().lower()

# Matching
MATCH_CATEGORY_POINTS = 5
MATCH_SAME_AREA_POINTS = 3
MATCH_WITHIN_24H_POINTS = 2
MATCH_WITHIN_72H_POINTS = 1
MATCH_KEYWORD_POINTS = 1
MATCH_MINIMUM_SCORE = 5
MATCH_MAX_RESULTS = 5

# Verification challenge
SECRET_QUESTION_COUNT = 3
VERIFICATION_PASS_THRESHOLD = 2
MAX_VERIFICATION_FAILURES = 3
MAX_ATTEMPTS_PER_WINDOW = 3
ATTEMPT_WINDOW_HOURS = 24
# Cooldown after the 1st, 2nd and 3rd failed attempt on a claim
COOLDOWN_HOURS = (1, 4, 24)

# Handover
HANDOVER_CODE_DIGITS = 6
HANDOVER_CODE_VALIDITY_HOURS = 24
MAX_REDEEM_ATTEMPTS = 3

# Disputes
DISPUTE_MIN_REASON_LENGTH = 20
DISPUTE_MAX_EVIDENCE = 10

# Trust adjustments
TRUST_RETURN_FINDER = 3
TRUST_RETURN_OWNER = 2
TRUST_EXHAUSTED_VERIFICATION = -5
TRUST_UNFOUNDED_DISPUTE = -3

# Sweeps
CLAIM_EXPIRY_DAYS = _env_int('HANDBACK_CLAIM_EXPIRY_DAYS', 7)
REPORT_EXPIRY_DAYS = _env_int('HANDBACK_REPORT_EXPIRY_DAYS', 30)
SCHEDULER_ENABLED = _env_bool('HANDBACK_SCHEDULER_ENABLED', False)

# Hashing
HASH_PEPPER = os.environ.get('HANDBACK_HASH_PEPPER', '')
SCRYPT_N = _env_int('HANDBACK_SCRYPT_N', 2 ** 14)
