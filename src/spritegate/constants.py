"""Shared pixel thresholds and pipeline limits.

The alpha cutoffs are used by the normalizer, clarifier, stabilizer,
repair pass, quality scorer and settings verifier so that every stage
agrees on what counts as "visible".
"""

# ---------------------------------------------------------------------------
# Alpha thresholds
# ---------------------------------------------------------------------------

# Pixels at or below this alpha are treated as fully transparent.
VISIBLE_ALPHA_MIN: int = 16

# Pixels below this alpha (and above VISIBLE_ALPHA_MIN) count as translucent.
OPAQUE_ALPHA_MIN: int = 245

# Outer sheet edge occupancy uses a slightly stricter cutoff.
EDGE_ALPHA_MIN: int = 32

# ---------------------------------------------------------------------------
# Model / backend
# ---------------------------------------------------------------------------

FALLBACK_IMAGE_MODEL: str = "gpt-image-1"

# ---------------------------------------------------------------------------
# Generation lifecycle
# ---------------------------------------------------------------------------

MAX_ERROR_REASON_LENGTH: int = 500
STALE_GENERATION_SECONDS: int = 5 * 60
FINGERPRINT_TTL_SECONDS: int = 24 * 60 * 60
LIST_GENERATIONS_LIMIT: int = 50

# Seeds are drawn from [0, SEED_LIMIT).
SEED_LIMIT: int = 2_147_483_647

# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------

QUEUE_NAME: str = "sprite-generation"
QUEUE_JOB_ATTEMPTS: int = 3
QUEUE_BACKOFF_SECONDS: float = 2.0
