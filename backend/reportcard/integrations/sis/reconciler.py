"""
Translates upstream identifiers embedded in incoming rows into local surrogate
keys.

For each referenced entity set the reconciler bulk-loads one
``upstream value -> local id`` map, then resolves every row against the maps
in memory. A row whose required reference cannot be resolved is not emitted;
it is recorded on the skipped list with a reason naming the entity and the
identifier that failed. Only a failure to load the maps aborts the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from reportcard.integrations.sis.errors import MappingUnresolved

logger = logging.getLogger(__name__)

IdPairLoader = Callable[[str, str], Awaitable[Iterable[Tuple[int, Hashable]]]]
PlaceholderWriter = Callable[[str, List[Dict[str, Any]]], Awaitable[Any]]

KEY_LABELS = {"ps_id": "psId", "ps_dcid": "dcid"}


@dataclass(frozen=True)
class ReferenceSpec:
    """How one upstream reference on a row maps to a local foreign key.

    ``source_field`` holds the upstream value on the transformed row,
    ``target`` is the referenced entity type and ``key`` the column on the
    target table the value is matched against. Unresolved optional
    references become ``None``; unresolved required references skip the row.
    ``placeholder`` builds a stand-in target row for unknown values, which is
    written before resolution.
    """
    source_field: str
    target_field: str
    target: str
    label: str
    key: str = "ps_id"
    required: bool = True
    placeholder: Optional[Callable[[Any], Dict[str, Any]]] = None

    @property
    def key_label(self) -> str:
        return KEY_LABELS.get(self.key, self.key.replace("_", " "))

    def unresolved_reason(self, value: Any) -> str:
        if value is None:
            return f"{self.label} reference missing"
        return f"{self.label} with {self.key_label} {value} not found"


@dataclass
class ReconciliationResult:
    resolved: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[MappingUnresolved] = field(default_factory=list)
    placeholders_created: Dict[str, int] = field(default_factory=dict)


class IdentifierReconciler:
    """Resolves upstream references on a batch of rows."""

    def __init__(self, load_id_pairs: IdPairLoader, write_placeholders: Optional[PlaceholderWriter] = None):
        self.load_id_pairs = load_id_pairs
        self.write_placeholders = write_placeholders
        self._maps: Dict[Tuple[str, str], Dict[Hashable, int]] = {}

    async def load_map(self, target: str, key: str = "ps_id", reload: bool = False) -> Dict[Hashable, int]:
        """Bulk-load ``upstream value -> local id`` for one entity set (cached per reconciler)."""
        cache_key = (target, key)
        if reload or cache_key not in self._maps:
            pairs = await self.load_id_pairs(target, key)
            self._maps[cache_key] = {upstream: local_id for local_id, upstream in pairs if upstream is not None}
            logger.debug(f"Loaded {len(self._maps[cache_key])} {target} ids keyed by {key}")
        return self._maps[cache_key]

    async def reconcile(
        self,
        rows: Sequence[Dict[str, Any]],
        references: Sequence[ReferenceSpec]
    ) -> ReconciliationResult:
        result = ReconciliationResult()
        if not references:
            result.resolved = [dict(row) for row in rows]
            return result

        maps = {}
        for ref in references:
            maps[ref] = await self.load_map(ref.target, ref.key)

        for ref in references:
            if ref.placeholder is None or self.write_placeholders is None:
                continue
            created = await self._ensure_placeholders(rows, ref, maps[ref])
            if created:
                result.placeholders_created[ref.target] = result.placeholders_created.get(ref.target, 0) + created
                maps[ref] = await self.load_map(ref.target, ref.key, reload=True)

        for row in rows:
            translated, reasons = self.resolve_row(row, references, maps)
            if reasons:
                result.skipped.append(MappingUnresolved(row.get("ps_id"), "; ".join(reasons)))
            else:
                result.resolved.append(translated)

        if result.skipped:
            logger.info(f"Reconciliation skipped {len(result.skipped)} of {len(rows)} records")
        return result

    @staticmethod
    def resolve_row(
        row: Dict[str, Any],
        references: Sequence[ReferenceSpec],
        maps: Dict[ReferenceSpec, Dict[Hashable, int]]
    ) -> Tuple[Dict[str, Any], List[str]]:
        translated = dict(row)
        reasons = []
        for ref in references:
            value = row.get(ref.source_field)
            local_id = maps[ref].get(value) if value is not None else None
            if local_id is None and ref.required:
                reasons.append(ref.unresolved_reason(value))
            translated[ref.target_field] = local_id
        return translated, reasons

    async def _ensure_placeholders(
        self,
        rows: Sequence[Dict[str, Any]],
        ref: ReferenceSpec,
        id_map: Dict[Hashable, int]
    ) -> int:
        missing = sorted({
            row.get(ref.source_field) for row in rows
            if row.get(ref.source_field) is not None and row.get(ref.source_field) not in id_map
        })
        if not missing:
            return 0

        logger.info(f"Creating {len(missing)} placeholder {ref.target}: {missing}")
        await self.write_placeholders(ref.target, [ref.placeholder(value) for value in missing])
        return len(missing)
