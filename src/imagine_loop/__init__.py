"""imagine_loop package.

Unattended multi-segment generation against an automation adapter: pacing,
asset-arrival detection, per-segment retry/moderation handling, frame
chaining and resumable checkpoints.
"""

from . import errors, schemas

__all__ = ["errors", "schemas"]
__version__ = "0.1.0"
