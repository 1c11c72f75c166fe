#!/usr/bin/env python3
"""
fdata_model.py - In-memory model of an fdata execution profile

What it holds:
- Location: a program point, either symbol-relative or DSO/load-address relative
- BranchInfo / MemInfo / SampleInfo: one aggregated record each
- FuncBranchData / FuncMemData / FuncSampleData: per-function record stores
- ProfileStore: the name-keyed maps a parse pass fills in

Aggregation:
Each per-function store keeps its records in a plain list plus dict indices that
map record keys to list positions. Duplicate records are merged by looking the
key up in the index and bumping the counters in place, so a whole profile is
folded in one pass with amortized O(1) work per record.

Lifecycle:
A store is "aggregating" until finalize() is called. finalize() sorts the record
lists (range queries binary-search on that order) and rebuilds every index
against the new positions. Range queries refuse to run on a store that has been
bumped since its last finalize().
"""

from __future__ import annotations

import dataclasses
import functools
from bisect import bisect_left, bisect_right
from typing import Dict, List, Optional, Set, Tuple, Union

UNKNOWN_NAME = "[unknown]"
HEAP_NAME = "[heap]"

# Memory records tag their locations with the branch flag + 3.
MEM_FLAG_SHIFT = 3


@functools.total_ordering
@dataclasses.dataclass(frozen=True, eq=False)
class Location:
    """
    A program point: symbol (is_symbol=True) or DSO name, plus a byte offset.

    All "[heap]" locations with the same flag compare equal regardless of
    offset, for ordering and hashing as well as equality.
    """
    is_symbol: bool
    name: str
    offset: int

    @classmethod
    def dso(cls, offset: int) -> Location:
        return cls(False, UNKNOWN_NAME, offset)

    def key(self) -> Tuple[bool, str, int]:
        if self.name == HEAP_NAME:
            return (self.is_symbol, self.name, 0)
        return (self.is_symbol, self.name, self.offset)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Location):
            return NotImplemented
        return self.key() == other.key()

    def __lt__(self, other: Location) -> bool:
        if not isinstance(other, Location):
            return NotImplemented
        return self.key() < other.key()

    def __hash__(self) -> int:
        return hash(self.key())

    def __str__(self) -> str:
        if self.is_symbol:
            return f"{self.name}+{self.offset:x}"
        return f"{self.offset:x}"


@functools.total_ordering
@dataclasses.dataclass(eq=False)
class BranchInfo:
    """Counts for one directed edge. Identity is (from_loc, to_loc)."""
    from_loc: Location
    to_loc: Location
    mispreds: int = 0
    branches: int = 0

    def key(self) -> Tuple[Location, Location]:
        return (self.from_loc, self.to_loc)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BranchInfo):
            return NotImplemented
        return self.key() == other.key()

    def __lt__(self, other: BranchInfo) -> bool:
        if not isinstance(other, BranchInfo):
            return NotImplemented
        return self.key() < other.key()

    __hash__ = None  # type: ignore[assignment]

    def merge_with(self, other: BranchInfo) -> None:
        self.mispreds += other.mispreds
        self.branches += other.branches

    def to_fdata(self) -> str:
        return (
            f"{int(self.from_loc.is_symbol)} {self.from_loc.name} {self.from_loc.offset:x} "
            f"{int(self.to_loc.is_symbol)} {self.to_loc.name} {self.to_loc.offset:x} "
            f"{self.mispreds} {self.branches}"
        )


@functools.total_ordering
@dataclasses.dataclass(eq=False)
class MemInfo:
    """A memory load at `offset` (inside the owning function) that touched `addr`."""
    offset: Location
    addr: Location
    count: int = 0

    def key(self) -> Tuple[Location, Location]:
        return (self.offset, self.addr)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MemInfo):
            return NotImplemented
        return self.key() == other.key()

    def __lt__(self, other: MemInfo) -> bool:
        if not isinstance(other, MemInfo):
            return NotImplemented
        return self.key() < other.key()

    __hash__ = None  # type: ignore[assignment]

    def merge_with(self, other: MemInfo) -> None:
        self.count += other.count

    def to_fdata(self) -> str:
        return (
            f"{int(self.offset.is_symbol) + MEM_FLAG_SHIFT} {self.offset.name} {self.offset.offset:x} "
            f"{int(self.addr.is_symbol) + MEM_FLAG_SHIFT} {self.addr.name} {self.addr.offset:x} "
            f"{self.count}"
        )

    def __str__(self) -> str:
        return f"{self.offset}: {self.addr}/{self.count}"


@functools.total_ordering
@dataclasses.dataclass(eq=False)
class SampleInfo:
    """Instruction-pointer samples that landed on `loc`."""
    loc: Location
    hits: int = 0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SampleInfo):
            return NotImplemented
        return self.loc == other.loc

    def __lt__(self, other: SampleInfo) -> bool:
        if not isinstance(other, SampleInfo):
            return NotImplemented
        return self.loc < other.loc

    __hash__ = None  # type: ignore[assignment]

    def merge_with(self, other: SampleInfo) -> None:
        self.hits += other.hits

    def to_fdata(self) -> str:
        return f"{int(self.loc.is_symbol)} {self.loc.name} {self.loc.offset:x} {self.hits}"


def _require_finalized(finalized: bool, name: str) -> None:
    if not finalized:
        raise RuntimeError(f"Profile data for {name} was modified after finalize(); call finalize() before range queries")


@dataclasses.dataclass(eq=False)
class FuncBranchData:
    """
    Branch profile of one function.

    data:        edges whose source lies in this function (intra-function
                 branches and calls/jumps leaving it)
    entry_data:  edges from elsewhere whose destination lies in this function

    Indices (values are positions in the lists above):
      intra_index[from_offset][to_offset]      edges staying in the function
      inter_index[from_offset][to_location]    edges leaving the function
      entry_index[from_location][to_offset]    edges entering the function
    """
    name: str
    data: List[BranchInfo] = dataclasses.field(default_factory=list)
    entry_data: List[BranchInfo] = dataclasses.field(default_factory=list)
    execution_count: int = 0
    used: bool = False
    intra_index: Dict[int, Dict[int, int]] = dataclasses.field(default_factory=dict, repr=False)
    inter_index: Dict[int, Dict[Location, int]] = dataclasses.field(default_factory=dict, repr=False)
    entry_index: Dict[Location, Dict[int, int]] = dataclasses.field(default_factory=dict, repr=False)
    finalized: bool = dataclasses.field(default=False, repr=False)

    def __post_init__(self) -> None:
        # Route any initial records through the indices so duplicates merge.
        data, entry_data = self.data, self.entry_data
        self.data, self.entry_data = [], []
        self._rebuild_indices()
        for info in data:
            self.add_branch(info)
        for info in entry_data:
            self.add_entry(info)

    def _is_local(self, loc: Location) -> bool:
        return loc.is_symbol and loc.name == self.name

    def _data_slots(self, from_offset: int, to_loc: Location) -> Tuple[dict, Union[int, Location]]:
        if self._is_local(to_loc):
            return self.intra_index.setdefault(from_offset, {}), to_loc.offset
        return self.inter_index.setdefault(from_offset, {}), to_loc

    def _rebuild_indices(self) -> None:
        self.intra_index = {}
        self.inter_index = {}
        self.entry_index = {}
        for pos, info in enumerate(self.data):
            slots, key = self._data_slots(info.from_loc.offset, info.to_loc)
            slots[key] = pos
        for pos, info in enumerate(self.entry_data):
            self.entry_index.setdefault(info.from_loc, {})[info.to_loc.offset] = pos

    def _merge(self, records: List[BranchInfo], slots: dict, key: Union[int, Location],
               from_loc: Location, to_loc: Location, mispreds: int, branches: int) -> BranchInfo:
        pos = slots.get(key)
        if pos is None:
            slots[key] = len(records)
            records.append(BranchInfo(from_loc, to_loc, mispreds, branches))
            self.finalized = False
            return records[-1]
        info = records[pos]
        info.mispreds += mispreds
        info.branches += branches
        return info

    def bump_branch_count(self, offset_from: int, offset_to: int, mispred: bool) -> None:
        """Count one taken branch between two offsets of this function."""
        from_loc = Location(True, self.name, offset_from)
        to_loc = Location(True, self.name, offset_to)
        slots, key = self._data_slots(offset_from, to_loc)
        self._merge(self.data, slots, key, from_loc, to_loc, int(mispred), 1)

    def bump_call_count(self, offset_from: int, to: Location, mispred: bool) -> None:
        """Count one call/jump from this function to `to`."""
        from_loc = Location(True, self.name, offset_from)
        slots, key = self._data_slots(offset_from, to)
        self._merge(self.data, slots, key, from_loc, to, int(mispred), 1)

    def bump_entry_count(self, from_loc: Location, offset_to: int, mispred: bool) -> None:
        """Count one branch from `from_loc` into this function at `offset_to`."""
        to_loc = Location(True, self.name, offset_to)
        slots = self.entry_index.setdefault(from_loc, {})
        self._merge(self.entry_data, slots, offset_to, from_loc, to_loc, int(mispred), 1)

    def add_branch(self, info: BranchInfo) -> BranchInfo:
        """Merge an already-counted edge that starts in this function."""
        slots, key = self._data_slots(info.from_loc.offset, info.to_loc)
        return self._merge(self.data, slots, key, info.from_loc, info.to_loc, info.mispreds, info.branches)

    def add_entry(self, info: BranchInfo) -> BranchInfo:
        """Merge an already-counted edge that enters this function."""
        slots = self.entry_index.setdefault(info.from_loc, {})
        return self._merge(self.entry_data, slots, info.to_loc.offset, info.from_loc, info.to_loc,
                           info.mispreds, info.branches)

    def finalize(self) -> None:
        self.data.sort()
        self.entry_data.sort()
        self._rebuild_indices()
        self.finalized = True

    def get_branch(self, offset_from: int, offset_to: int) -> Optional[BranchInfo]:
        """Intra-function edge between two offsets, or None."""
        pos = self.intra_index.get(offset_from, {}).get(offset_to)
        if pos is None:
            return None
        return self.data[pos]

    def get_branch_range(self, offset_from: int) -> List[BranchInfo]:
        """All edges leaving `offset_from`, in sorted order."""
        _require_finalized(self.finalized, self.name)
        lo = bisect_left(self.data, offset_from, key=lambda bi: bi.from_loc.offset)
        hi = bisect_right(self.data, offset_from, key=lambda bi: bi.from_loc.offset)
        return self.data[lo:hi]

    def get_direct_call_branch(self, offset_from: int) -> Optional[BranchInfo]:
        """
        The call edge leaving `offset_from`. Only meaningful for direct call
        sites: for an indirect call with several targets, which one is
        returned is unspecified.
        """
        for info in self.get_branch_range(offset_from):
            if info.from_loc.name != info.to_loc.name:
                return info
        return None

    def append_from(self, other: FuncBranchData, offset: int) -> None:
        """
        Fold in the profile of `other`, whose code sits `offset` bytes past the
        entry of this function. Locations naming `other` are renamed to this
        function and shifted; counts are kept as they are.
        """
        def relocate(loc: Location) -> Location:
            if loc.name != other.name:
                return loc
            return Location(loc.is_symbol, self.name, loc.offset + offset)

        for info in list(other.data):
            self.add_branch(BranchInfo(relocate(info.from_loc), relocate(info.to_loc),
                                       info.mispreds, info.branches))
        for info in list(other.entry_data):
            self.add_entry(BranchInfo(info.from_loc, relocate(info.to_loc), info.mispreds, info.branches))
        self.execution_count += other.execution_count
        self.finalize()

    @property
    def total_branches(self) -> int:
        return sum(bi.branches for bi in self.data)

    @property
    def total_mispreds(self) -> int:
        return sum(bi.mispreds for bi in self.data)


@dataclasses.dataclass(eq=False)
class FuncMemData:
    """Memory loads issued by one function, keyed by (load offset, address)."""
    name: str
    data: List[MemInfo] = dataclasses.field(default_factory=list)
    used: bool = False
    event_index: Dict[int, Dict[Location, int]] = dataclasses.field(default_factory=dict, repr=False)
    finalized: bool = dataclasses.field(default=False, repr=False)

    def __post_init__(self) -> None:
        data = self.data
        self.data = []
        self.event_index = {}
        for info in data:
            self.update(info.offset, info.addr, info.count)

    def update(self, offset: Location, addr: Location, count: int = 1) -> MemInfo:
        """Record `count` loads at `offset` touching `addr`, coalescing repeats."""
        slots = self.event_index.setdefault(offset.offset, {})
        pos = slots.get(addr)
        if pos is None:
            slots[addr] = len(self.data)
            self.data.append(MemInfo(offset, addr, count))
            self.finalized = False
            return self.data[-1]
        info = self.data[pos]
        info.count += count
        return info

    def finalize(self) -> None:
        self.data.sort()
        self.event_index = {}
        for pos, info in enumerate(self.data):
            self.event_index.setdefault(info.offset.offset, {})[info.addr] = pos
        self.finalized = True

    def get_mem_info_range(self, offset: int) -> List[MemInfo]:
        """All memory events recorded for the load at `offset`."""
        _require_finalized(self.finalized, self.name)
        lo = bisect_left(self.data, offset, key=lambda mi: mi.offset.offset)
        hi = bisect_right(self.data, offset, key=lambda mi: mi.offset.offset)
        return self.data[lo:hi]

    @property
    def total_count(self) -> int:
        return sum(mi.count for mi in self.data)


@dataclasses.dataclass(eq=False)
class FuncSampleData:
    """Flat instruction-pointer samples of one function, keyed by offset."""
    name: str
    data: List[SampleInfo] = dataclasses.field(default_factory=list)
    index: Dict[int, int] = dataclasses.field(default_factory=dict, repr=False)
    finalized: bool = dataclasses.field(default=False, repr=False)

    def __post_init__(self) -> None:
        data = self.data
        self.data = []
        self.index = {}
        for info in data:
            self.bump_count(info.loc.offset, info.hits)

    def bump_count(self, offset: int, count: int = 1) -> SampleInfo:
        pos = self.index.get(offset)
        if pos is None:
            self.index[offset] = len(self.data)
            self.data.append(SampleInfo(Location(True, self.name, offset), count))
            self.finalized = False
            return self.data[-1]
        info = self.data[pos]
        info.hits += count
        return info

    def finalize(self) -> None:
        self.data.sort()
        self.index = {info.loc.offset: pos for pos, info in enumerate(self.data)}
        self.finalized = True

    def get_samples(self, start: int, end: int) -> int:
        """Sum of hits for offsets in [start, end)."""
        _require_finalized(self.finalized, self.name)
        lo = bisect_left(self.data, start, key=lambda si: si.loc.offset)
        hi = bisect_left(self.data, end, key=lambda si: si.loc.offset)
        return sum(si.hits for si in self.data[lo:hi])

    @property
    def total_hits(self) -> int:
        return sum(si.hits for si in self.data)


@dataclasses.dataclass
class ProfileStore:
    """Everything one parse pass produces."""
    branches: Dict[str, FuncBranchData] = dataclasses.field(default_factory=dict)
    samples: Dict[str, FuncSampleData] = dataclasses.field(default_factory=dict)
    mem_events: Dict[str, FuncMemData] = dataclasses.field(default_factory=dict)
    event_names: Set[str] = dataclasses.field(default_factory=set)
    no_lbr_mode: bool = False

    def branch_entry(self, name: str) -> FuncBranchData:
        entry = self.branches.get(name)
        if entry is None:
            entry = self.branches[name] = FuncBranchData(name)
        return entry

    def sample_entry(self, name: str) -> FuncSampleData:
        entry = self.samples.get(name)
        if entry is None:
            entry = self.samples[name] = FuncSampleData(name)
        return entry

    def mem_entry(self, name: str) -> FuncMemData:
        entry = self.mem_events.get(name)
        if entry is None:
            entry = self.mem_events[name] = FuncMemData(name)
        return entry

    def finalize(self) -> None:
        for fbd in self.branches.values():
            fbd.finalize()
        for fsd in self.samples.values():
            fsd.finalize()
        for fmd in self.mem_events.values():
            fmd.finalize()
