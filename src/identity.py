"""Run identity generation.

Every provisioned resource is suffixed with the run identity, so two runs
that drew the same identity would fight over the same cloud resources.
Identities are drawn from the OS CSPRNG and remembered for the lifetime of
the process; a draw that repeats an issued identity is discarded.
"""

import logging
import re
import secrets
import string
import threading

logger = logging.getLogger(__name__)

DEFAULT_LENGTH = 8
MAX_LENGTH = 32
DEFAULT_ALPHABET = string.ascii_lowercase + string.digits
MAX_ATTEMPTS = 16

_RUN_ID_PATTERN = re.compile(r'^[a-z0-9]+$')

_issued: set[str] = set()
_issued_lock = threading.Lock()


class IdentityError(Exception):
    """A run identity could not be produced or is invalid."""


def generate_run_id(length: int = DEFAULT_LENGTH, alphabet: str = DEFAULT_ALPHABET) -> str:
    """Return a new lowercase alphanumeric run identity.

    Raises:
        ValueError: length or alphabet unusable
        IdentityError: entropy unavailable or no fresh identity after MAX_ATTEMPTS
    """
    if not 1 <= length <= MAX_LENGTH:
        raise ValueError(f"length must be between 1 and {MAX_LENGTH}, got {length}")
    if not alphabet or not _RUN_ID_PATTERN.match(alphabet):
        raise ValueError(f"alphabet must be non-empty lowercase alphanumeric, got {alphabet!r}")

    for _ in range(MAX_ATTEMPTS):
        try:
            candidate = ''.join(secrets.choice(alphabet) for _ in range(length))
        except (NotImplementedError, OSError) as e:
            raise IdentityError(f"Entropy source unavailable: {e}") from e

        with _issued_lock:
            if candidate not in _issued:
                _issued.add(candidate)
                logger.debug(f"Generated run id: {candidate}")
                return candidate
        logger.debug(f"Run id {candidate} already issued, drawing again")

    raise IdentityError(
        f"Could not draw an unused run id after {MAX_ATTEMPTS} attempts "
        f"(length={length}, alphabet size={len(alphabet)})"
    )


def normalize_run_id(value: str) -> str:
    """Lowercase and validate a caller-supplied run identity."""
    run_id = value.strip().lower()
    if not run_id or len(run_id) > MAX_LENGTH or not _RUN_ID_PATTERN.match(run_id):
        raise IdentityError(
            f"Invalid run id {value!r}: expected 1-{MAX_LENGTH} lowercase alphanumeric characters"
        )
    with _issued_lock:
        _issued.add(run_id)
    return run_id
