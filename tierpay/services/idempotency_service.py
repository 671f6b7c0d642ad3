"""Idempotency key derivation.

The key coalesces rapid duplicate submissions of the same upgrade by the
same user. It is bucketed by time (60 seconds by default), so:

    - resubmissions inside one bucket map to the same key and return the
      existing transaction;
    - a resubmission that crosses a bucket boundary (e.g. :59 then :01)
      gets a new key. It is still blocked while the first transaction is
      pending/processing, by the one-active-upgrade index on the store.
"""

import time


def current_bucket(now=None, bucket_seconds=60):
    """Return the integer time bucket for `now` (epoch seconds or datetime)."""
    if now is None:
        now = time.time()
    elif hasattr(now, "timestamp"):
        now = now.timestamp()
    return int(now // bucket_seconds)


def derive_idempotency_key(user_id, target_tier, time_bucket, subject_type="creator"):
    """Deterministic key for (user, target tier, bucket).

    Creator keys keep the bare "<user>-<tier>-<bucket>" form; member keys are
    prefixed so the two catalogs' shared tier names never collide.
    """
    key = f"{user_id}-{target_tier}-{time_bucket}"
    if subject_type != "creator":
        key = f"{subject_type}:{key}"
    return key
