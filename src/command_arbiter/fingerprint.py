"""
Deterministic fingerprints.

- evidence fingerprint: gates the arbitration retry (retry only on change)
- snapshot fingerprint: detects UI drift under a pending scope-typo replay
- option set id: identity of a clarifier's option list
"""

import hashlib
import json
from typing import Any, Dict, Iterable, Optional, Sequence

from command_arbiter.models import ActiveSnapshot, Candidate


def _digest(canonical: str) -> str:
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def canonical_evidence(
    candidates: Sequence[Candidate],
    scope_key: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Canonical string behind the evidence fingerprint.

    Format: ids|labels|scope|k=json(v);... with ids sorted and metadata keys
    sorted, so ordering never changes the result.
    """
    ordered = sorted(candidates, key=lambda c: c.id)
    ids = ",".join(c.id for c in ordered)
    labels = ",".join(f"{c.label}/{c.sublabel or ''}" for c in ordered)
    meta = ";".join(
        f"{key}={json.dumps(value, sort_keys=True, default=str)}"
        for key, value in sorted((metadata or {}).items())
    )
    return f"{ids}|{labels}|{scope_key}|{meta}"


def compute_evidence_fingerprint(
    candidates: Sequence[Candidate],
    scope_key: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    return _digest(canonical_evidence(candidates, scope_key, metadata))


def compute_snapshot_fingerprint(snapshot: ActiveSnapshot) -> str:
    canonical = "|".join([
        snapshot.active_widget_id or "",
        snapshot.active_panel_id or "",
        snapshot.active_dashboard_id or "",
        snapshot.active_workspace_id or "",
        ",".join(sorted(snapshot.open_widget_ids)),
    ])
    return _digest(canonical)


def compute_option_set_id(scope_key: str, candidate_ids: Iterable[str]) -> str:
    canonical = f"{scope_key}|{','.join(sorted(candidate_ids))}"
    return "os_" + _digest(canonical)[:16]
