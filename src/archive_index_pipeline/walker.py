from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from pathlib import Path

import structlog

from archive_index_pipeline.dates import parse_unit_date
from archive_index_pipeline.models import AncestorRef, ArchiveFile, ArchiveNode, Origin, OriginRef
from archive_index_pipeline.util import normalize_key, origin_id, provisional_id, strip_source_prefix

logger = structlog.get_logger(__name__)

DEFAULT_SOURCE_ID_PREFIX = "DE-1958_"
DEFAULT_FILE_SLICE_SIZE = 1000
# How much longer than "unitid + title" a heading may be and still count as a repeat.
DOUBLE_HEADER_SLACK = 5

OUTCOME_IMPORTED = "imported"
OUTCOME_SKIPPED_NOT_INVENTORY = "skipped_not_inventory"
OUTCOME_SKIPPED_UNPARSEABLE = "skipped_unparseable"

_COMPONENT_TAG_RE = re.compile(r"c(0[1-9]|1[0-2])?")
_CALL_NUMBER_PREFIX_RE = re.compile(r"^BArch\s+")
_LEADING_CALL_NUMBER_RE = re.compile(
    r"^(?P<call_number>[A-ZÄÖÜ]{1,4} ?\d+(?:[ ./-]\d+)*)\b[\s:.,;-]*(?P<rest>.*)$",
    re.DOTALL,
)


@dataclass
class WalkProgress:
    """
    Monotonic node/file counters. The walker only ever increments; observers
    subscribe through `listener` instead of reading the call stack.
    """

    nodes: int = 0
    files: int = 0
    listener: Callable[[str, int], None] | None = None

    def advance(self, kind: str) -> None:
        if kind == "node":
            self.nodes += 1
            total = self.nodes
        else:
            self.files += 1
            total = self.files
        if self.listener is not None:
            self.listener(kind, total)


class IdentityCache:
    """
    Node and origin identities resolved during a walk.

    One instance is shared by all documents of a coordinator run; independent
    per-document imports each own a private instance.
    """

    def __init__(self) -> None:
        self.nodes: dict[str, ArchiveNode] = {}
        self.origins: dict[str, Origin] = {}
        self._aliases: dict[str, str] = {}
        self._written: set[str] = set()
        # Ids that written file records or node ancestor chains point at.
        self._referenced: set[str] = set()
        self._retired: list[str] = []

    def resolve_id(self, node_id: str) -> str:
        seen: set[str] = set()
        while node_id in self._aliases and node_id not in seen:
            seen.add(node_id)
            node_id = self._aliases[node_id]
        return node_id

    def get_node(self, node_id: str | None) -> ArchiveNode | None:
        if not node_id:
            return None
        return self.nodes.get(self.resolve_id(node_id))

    def add_node(self, node: ArchiveNode) -> None:
        self.nodes[node.id] = node

    def can_rename(self, node_id: str) -> bool:
        return node_id not in self._referenced

    def rename(self, node: ArchiveNode, new_id: str) -> ArchiveNode:
        """
        Gives a provisional node its real id. When a node with that id already
        exists the two are merged (existing values win) and the existing node
        is returned; otherwise the node is renamed in place.

        A node that written records already point at keeps its id, so those
        records never reference a deleted node.

        On a merge, descendants keep the ancestor chain captured below the
        provisional node; only the merged node's own entry is re-resolved.
        """
        old_id = node.id
        if old_id == new_id or not self.can_rename(old_id):
            return node
        existing = self.nodes.get(self.resolve_id(new_id))
        self.nodes.pop(old_id, None)
        self._aliases[old_id] = new_id
        if old_id in self._written:
            self._retired.append(old_id)

        if existing is not None and existing is not node:
            existing.fill_gaps_from(node)
            return existing

        node.id = new_id
        self.nodes[new_id] = node
        return node

    def origin(self, name: str, label: str | None) -> tuple[Origin, bool]:
        oid = origin_id(name)
        cached = self.origins.get(oid)
        if cached is not None:
            return cached, False
        created = Origin(id=oid, name=name.strip(), label=label)
        self.origins[oid] = created
        return created, True

    def ancestor_chain(self, refs: tuple[AncestorRef, ...] | list[AncestorRef]) -> tuple[AncestorRef, ...]:
        """Re-resolves an ancestor snapshot against the current node identities."""
        chain: list[AncestorRef] = []
        for ref in refs:
            node = self.get_node(ref.id)
            chain.append(node.ref() if node is not None else ref)
        return tuple(chain)

    def mark_written(self, nodes: list[ArchiveNode], files: list[ArchiveFile]) -> None:
        self._written.update(n.id for n in nodes)
        for n in nodes:
            self._referenced.update(a.id for a in n.ancestors)
        for f in files:
            self._referenced.add(f.archive_node_id)
            self._referenced.update(a.id for a in f.ancestors)

    def take_retired(self) -> list[str]:
        retired, self._retired = self._retired, []
        return retired


@dataclass
class DrainedBatches:
    nodes: list[ArchiveNode] = field(default_factory=list)
    files: list[ArchiveFile] = field(default_factory=list)
    origins: list[Origin] = field(default_factory=list)
    deleted_node_ids: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.nodes) + len(self.files) + len(self.origins) + len(self.deleted_node_ids)


@dataclass
class PendingBatches:
    node_ids: list[str] = field(default_factory=list)
    files: list[ArchiveFile] = field(default_factory=list)
    origins: list[Origin] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.node_ids) + len(self.files) + len(self.origins)

    def drain(self, cache: IdentityCache) -> DrainedBatches:
        """
        Empties the batches. Node ids and ancestor snapshots are resolved here,
        at flush time, so renames that happened after a record was queued are
        reflected in what gets written.
        """
        nodes: list[ArchiveNode] = []
        seen: set[str] = set()
        for node_id in self.node_ids:
            node = cache.get_node(node_id)
            if node is None or node.id in seen:
                continue
            seen.add(node.id)
            if node.parent_node_id:
                node.parent_node_id = cache.resolve_id(node.parent_node_id)
            node.ancestors = list(cache.ancestor_chain(node.ancestors))
            nodes.append(node)

        files = [
            replace(
                f,
                archive_node_id=cache.resolve_id(f.archive_node_id),
                ancestors=cache.ancestor_chain(f.ancestors),
            )
            for f in self.files
        ]

        cache.mark_written(nodes, files)
        drained = DrainedBatches(
            nodes=nodes,
            files=files,
            origins=list(self.origins),
            deleted_node_ids=[i for i in cache.take_retired() if i not in seen],
        )
        self.node_ids.clear()
        self.files.clear()
        self.origins.clear()
        return drained


@dataclass(frozen=True)
class WalkerOptions:
    source_id_prefix: str = DEFAULT_SOURCE_ID_PREFIX
    file_slice_size: int = DEFAULT_FILE_SLICE_SIZE
    # None: batches are only drained by the caller (document boundaries).
    flush_threshold: int | None = None


@dataclass(frozen=True)
class WalkResult:
    filename: str
    outcome: str
    nodes: int = 0
    files: int = 0
    origins: int = 0

    @property
    def imported(self) -> bool:
        return self.outcome == OUTCOME_IMPORTED

    @property
    def records(self) -> int:
        return self.files


def _local_name(name: str) -> str:
    return name.rsplit("}", 1)[-1] if "}" in name else name


def strip_namespaces(root: ET.Element) -> None:
    for el in root.iter():
        if isinstance(el.tag, str):
            el.tag = _local_name(el.tag)
        if any("}" in k for k in el.attrib):
            el.attrib = {_local_name(k): v for k, v in el.attrib.items()}


def _is_component(el: ET.Element) -> bool:
    return isinstance(el.tag, str) and _COMPONENT_TAG_RE.fullmatch(el.tag) is not None


def _components(el: ET.Element) -> Iterator[ET.Element]:
    for child in el:
        if _is_component(child):
            yield child


def _find_fonds(el: ET.Element) -> Iterator[ET.Element]:
    for child in el:
        if _is_component(child) and child.get("level") == "fonds":
            yield child
        else:
            yield from _find_fonds(child)


def _text(el: ET.Element, path: str) -> str | None:
    found = el.find(path)
    if found is None:
        return None
    text = " ".join("".join(found.itertext()).split())
    return text or None


def _paragraphs(el: ET.Element, path: str) -> str | None:
    found = el.find(path)
    if found is None:
        return None
    paras = [" ".join("".join(p.itertext()).split()) for p in found.iter("p")]
    text = "\n".join(p for p in paras if p) or " ".join("".join(found.itertext()).split())
    return text or None


def _fields(el: ET.Element, path: str) -> dict[str, str] | None:
    found = el.find(path)
    if found is None:
        return None
    out: dict[str, str] = {}
    for child in found:
        if not isinstance(child.tag, str):
            continue
        value = " ".join("".join(child.itertext()).split())
        if value:
            out[child.tag] = value
    if not out:
        value = " ".join("".join(found.itertext()).split())
        if value:
            out["text"] = value
    return out or None


def _originations(el: ET.Element) -> list[OriginRef]:
    refs: list[OriginRef] = []
    for origination in el.findall("did/origination"):
        name = " ".join("".join(origination.itertext()).split())
        if name:
            refs.append(OriginRef(name=name, label=origination.get("label")))
    return refs


def split_leading_call_number(title: str | None) -> str | None:
    """
    "DK 107/11126 Korrespondenz" -> "DK 107/11126". Only accepted when the rest
    of the title is more than a couple of characters.
    """
    match = _LEADING_CALL_NUMBER_RE.match((title or "").strip())
    if not match:
        return None
    if len(match.group("rest").strip()) <= 2:
        return None
    return match.group("call_number").strip()


def is_double_header(
    child_title: str | None,
    *,
    parent_title: str | None,
    parent_unitid: str | None,
) -> bool:
    """
    True when a child heading only repeats its parent ("B 153 Bundesministerium"
    directly below "Bundesministerium" with unit id "B 153").
    """
    child = normalize_key(child_title)
    title = normalize_key(parent_title)
    unitid = normalize_key(parent_unitid)
    if not child:
        return False
    if title and child == title:
        return True
    if unitid and title and unitid in child and title in child:
        return True
    if unitid and child.startswith(unitid):
        return len(child) <= len(title) + len(unitid) + DOUBLE_HEADER_SLACK
    return False


class TreeWalker:
    """
    Converts finding-aid documents into node, file and origin records.

    Records accumulate in `pending`; the caller drains them at document
    boundaries, or `flush` is called whenever `options.flush_threshold`
    file records are queued.
    """

    def __init__(
        self,
        cache: IdentityCache | None = None,
        *,
        options: WalkerOptions | None = None,
        progress: WalkProgress | None = None,
        flush: Callable[[DrainedBatches], None] | None = None,
    ) -> None:
        self.cache = cache if cache is not None else IdentityCache()
        self.options = options or WalkerOptions()
        self.progress = progress or WalkProgress()
        self.pending = PendingBatches()
        self._flush = flush
        self._origins_created = 0

    def drain(self) -> DrainedBatches:
        return self.pending.drain(self.cache)

    def walk_path(self, path: Path) -> WalkResult:
        try:
            tree = ET.parse(path)
        except ET.ParseError as e:
            logger.warning("walker.document.unparseable", filename=path.name, error=str(e))
            return WalkResult(filename=path.name, outcome=OUTCOME_SKIPPED_UNPARSEABLE)
        return self.walk_root(tree.getroot(), filename=path.name)

    def walk_bytes(self, data: bytes, *, filename: str = "<memory>") -> WalkResult:
        try:
            root = ET.fromstring(data)
        except ET.ParseError as e:
            logger.warning("walker.document.unparseable", filename=filename, error=str(e))
            return WalkResult(filename=filename, outcome=OUTCOME_SKIPPED_UNPARSEABLE)
        return self.walk_root(root, filename=filename)

    def walk_root(self, root: ET.Element, *, filename: str) -> WalkResult:
        strip_namespaces(root)
        archdesc = root if root.tag == "archdesc" else root.find("archdesc")
        doc_type = archdesc.get("type") if archdesc is not None else None
        if doc_type != "inventory":
            logger.info("walker.document.skipped", filename=filename, type=doc_type)
            return WalkResult(filename=filename, outcome=OUTCOME_SKIPPED_NOT_INVENTORY)

        nodes_before = self.progress.nodes
        files_before = self.progress.files
        origins_before = self._origins_created

        for fonds in _find_fonds(archdesc):
            self._walk(fonds, None)

        result = WalkResult(
            filename=filename,
            outcome=OUTCOME_IMPORTED,
            nodes=self.progress.nodes - nodes_before,
            files=self.progress.files - files_before,
            origins=self._origins_created - origins_before,
        )
        logger.debug(
            "walker.document.walked",
            filename=filename,
            nodes=result.nodes,
            files=result.files,
            origins=result.origins,
        )
        return result

    def _walk(self, el: ET.Element, parent: ArchiveNode | None) -> None:
        node = self._resolve_node(el, parent)
        self._walk_contents(el, node)

    def _walk_contents(self, el: ET.Element, node: ArchiveNode) -> ArchiveNode:
        files = [c for c in _components(el) if c.get("level") == "file"]
        size = max(self.options.file_slice_size, 1)
        for start in range(0, len(files), size):
            for file_el in files[start : start + size]:
                self._emit_file(file_el, node)
            self._maybe_flush()

        for child in _components(el):
            if child.get("level") == "file":
                continue
            if is_double_header(_text(child, "did/unittitle"), parent_title=node.name, parent_unitid=node.unitid):
                node = self._absorb_double_header(child, node)
                node = self._walk_contents(child, node)
            else:
                self._walk(child, node)
        return node

    def _absorb_double_header(self, child: ET.Element, node: ArchiveNode) -> ArchiveNode:
        real_id = strip_source_prefix(child.get("id"), self.options.source_id_prefix)
        if not node.provisional or not real_id or real_id == node.id:
            return node
        if not self.cache.can_rename(node.id):
            logger.warning("walker.node.rename_skipped", node_id=node.id, real_id=real_id)
            return node
        old_id = node.id
        effective = self.cache.rename(node, real_id)
        self.pending.node_ids.append(effective.id)
        logger.debug(
            "walker.node.renamed",
            old_id=old_id,
            new_id=effective.id,
            merged=effective is not node,
        )
        return effective

    def _resolve_node(self, el: ET.Element, parent: ArchiveNode | None) -> ArchiveNode:
        name = _text(el, "did/unittitle")
        unitid = _text(el, "did/unitid") or split_leading_call_number(name)
        node_id = strip_source_prefix(el.get("id"), self.options.source_id_prefix) or provisional_id(
            scope=parent.id if parent else None,
            unitid=unitid,
            title=name,
        )

        cached = self.cache.get_node(node_id)
        if cached is not None:
            return cached

        language = el.find("did/langmaterial/language")
        node = ArchiveNode(
            id=node_id,
            name=name,
            level=el.get("level"),
            unitid=unitid,
            unitdate=_text(el, "did/unitdate"),
            physdesc=_fields(el, "did/physdesc"),
            langmaterial=_text(el, "did/langmaterial")
            or (language.get("langcode") if language is not None else None),
            origination=_originations(el),
            repository=_fields(el, "did/repository"),
            scopecontent=_paragraphs(el, "scopecontent"),
            relatedmaterial=_paragraphs(el, "relatedmaterial"),
            prefercite=_paragraphs(el, "prefercite"),
            parent_node_id=parent.id if parent else None,
            ancestors=[*parent.ancestors, parent.ref()] if parent else [],
        )
        self.cache.add_node(node)
        self.pending.node_ids.append(node.id)
        self.progress.advance("node")
        return node

    def _emit_file(self, el: ET.Element, node: ArchiveNode) -> None:
        title = _text(el, "did/unittitle")
        call_number = _text(el, "did/unitid[@type='call number']")
        if call_number:
            call_number = _CALL_NUMBER_PREFIX_RE.sub("", call_number)
        else:
            call_number = split_leading_call_number(title)

        date_el = el.find("did/unitdate")
        unit_date = parse_unit_date(
            date_el.get("normal") if date_el is not None else None,
            _text(el, "did/unitdate"),
        )

        origins: list[OriginRef] = []
        origin_ids: list[str] = []
        for ref in _originations(el):
            origin, created = self.cache.origin(ref.name, ref.label)
            if created:
                self.pending.origins.append(origin)
                self._origins_created += 1
            if origin.id not in origin_ids:
                origins.append(ref)
                origin_ids.append(origin.id)

        language = el.find("did/langmaterial/language")
        link = el.find("otherfindaid/p/extref")
        file_id = strip_source_prefix(el.get("id"), self.options.source_id_prefix) or provisional_id(
            scope=node.id,
            unitid=call_number,
            title=title,
        )

        self.pending.files.append(
            ArchiveFile(
                id=file_id,
                archive_node_id=node.id,
                title=title,
                call_number=call_number,
                source_date_text=unit_date.text,
                source_date_start=unit_date.start_date,
                source_date_end=unit_date.end_date,
                source_date_start_uncorrected=unit_date.start_uncorrected,
                source_date_end_uncorrected=unit_date.end_uncorrected,
                location=_text(el, "did/physloc"),
                language_code=language.get("langcode") if language is not None else None,
                summary=_paragraphs(el, "scopecontent[@encodinganalog='summary']"),
                link=link.get("href") if link is not None else None,
                ancestors=(*node.ancestors, node.ref()),
                origins=tuple(origins),
                origin_ids=tuple(origin_ids),
            )
        )
        self.progress.advance("file")

    def _maybe_flush(self) -> None:
        threshold = self.options.flush_threshold
        if self._flush is None or threshold is None:
            return
        if len(self.pending.files) >= threshold:
            self._flush(self.drain())
