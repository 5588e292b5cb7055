"""Entity models for certkeeper.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from certkeeper.models.action import ACTION_TYPES, Action, action_from_dict
from certkeeper.models.certificate import (
    CertificateRecord,
    EffectivePolicy,
    RenewalPolicy,
    RenewalStatusRecord,
    SanEntry,
    VersionEntry,
)
from certkeeper.models.passphrase import StoredPassphrase

__all__ = [
    "ACTION_TYPES",
    "Action",
    "CertificateRecord",
    "EffectivePolicy",
    "RenewalPolicy",
    "RenewalStatusRecord",
    "SanEntry",
    "StoredPassphrase",
    "VersionEntry",
    "action_from_dict",
]
