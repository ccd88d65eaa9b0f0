"""
offer-consensus: Contribution consensus engine for crowd-sourced prices.

Turns a noisy stream of user-submitted store prices into time-bounded,
corroborated daily offers: name normalization, validation, rate limiting,
entity resolution, duplicate and conflict checks, corroboration approval
and expiry.
"""

__version__ = "0.1.0"
