#!/usr/bin/env python3
"""
fdata_reader.py - Read an fdata profile into per-function lookup tables

What it does:
- Detects the grammar from the first line (LBR branches or no_lbr samples)
- Drives the line parser over the whole buffer, merging every record into the
  FuncBranchData / FuncSampleData / FuncMemData of the function it belongs to
- Sorts the per-function records and builds the LTO common-name maps
- Answers lookups by function name, exact or LTO-fuzzy

Branch records are filed as follows:
- the edge goes to the `data` of the function it starts in
- if it lands in another function, or on any function entry (offset 0), it
  also goes to the `entry_data` of the destination
- if it lands on a function entry, its count is added to the destination's
  execution count (tail recursion can't be told apart from entries here)
Records with no symbol at either end are dropped, as are samples and memory
loads not attributed to a symbol.

A failed parse writes its line/column to the diagnostic console, leaves the
reader in FAILED and returns False; whatever was stored up to that point must
not be used.
"""

from __future__ import annotations

import enum
from typing import Dict, Iterable, List, Optional, Set, Union

from rich.console import Console

from fdata_model import (
    FuncBranchData,
    FuncMemData,
    FuncSampleData,
    Location,
    ProfileStore,
)
from fdata_parser import FdataParseError, LineParser
from lto_names import LTONameMaps, fetch_map_entry


class ReaderState(enum.Enum):
    UNSTARTED = "unstarted"
    LBR = "lbr"
    NO_LBR = "no_lbr"
    PARSING = "parsing"
    COMPLETE = "complete"
    FAILED = "failed"


class DataReader:
    def __init__(self, buffer: Union[bytes, str], diag: Console):
        if isinstance(buffer, bytes):
            # Names stay byte-exact: undecodable bytes become lone surrogates.
            buffer = buffer.decode("utf-8", errors="surrogateescape")
        self.diag = diag
        self.state = ReaderState.UNSTARTED
        self.store = ProfileStore()
        self.lto_maps = LTONameMaps()
        self._parser = LineParser(buffer, diag)

    def parse(self) -> bool:
        """
        Parse the whole buffer. The format is the LBR branch format unless the
        first line is a `no_lbr` marker, in which case samples are read instead.
        """
        return self._run(force_no_lbr=False)

    def parse_in_no_lbr_mode(self) -> bool:
        """Parse the buffer as flat samples; a leading `no_lbr` line is optional."""
        return self._run(force_no_lbr=True)

    def _run(self, force_no_lbr: bool) -> bool:
        if self.state is not ReaderState.UNSTARTED:
            raise RuntimeError(f"Profile reader can only parse once (state: {self.state.value})")

        parser = self._parser
        try:
            has_marker = parser.maybe_parse_no_lbr_flag(self.store.event_names)
            self.store.no_lbr_mode = has_marker or force_no_lbr
            self.state = ReaderState.NO_LBR if self.store.no_lbr_mode else ReaderState.LBR

            if not parser.has_branch_data() and not parser.has_mem_data():
                raise parser.error("no valid profile data found")

            self.state = ReaderState.PARSING
            if self.store.no_lbr_mode:
                self._parse_samples()
            else:
                self._parse_branches()
            self._parse_mem_events()
            parser.expect_end_of_input()
        except FdataParseError:
            self.state = ReaderState.FAILED
            return False

        self.store.finalize()
        self.lto_maps = LTONameMaps.build(self.store)
        self.state = ReaderState.COMPLETE
        return True

    def _parse_branches(self) -> None:
        parser = self._parser
        while parser.has_branch_data():
            info = parser.parse_branch_info()
            src, dst = info.from_loc, info.to_loc
            if not src.is_symbol and not dst.is_symbol:
                continue

            self.store.branch_entry(src.name).add_branch(info)
            if dst.is_symbol and (src.name != dst.name or dst.offset == 0):
                self.store.branch_entry(dst.name).add_entry(info)
            if dst.is_symbol and dst.offset == 0:
                self.store.branch_entry(dst.name).execution_count += info.branches

    def _parse_samples(self) -> None:
        parser = self._parser
        while parser.has_branch_data():
            info = parser.parse_sample_info()
            if not info.loc.is_symbol:
                continue
            self.store.sample_entry(info.loc.name).bump_count(info.loc.offset, info.hits)

    def _parse_mem_events(self) -> None:
        parser = self._parser
        while parser.has_mem_data():
            info = parser.parse_mem_info()
            if not info.offset.is_symbol:
                continue
            self.store.mem_entry(info.offset.name).update(info.offset, info.addr, info.count)

    # Lookups

    def get_func_branch_data(self, func_names: Iterable[str]) -> Optional[FuncBranchData]:
        return fetch_map_entry(self.store.branches, func_names)

    def get_func_mem_data(self, func_names: Iterable[str]) -> Optional[FuncMemData]:
        return fetch_map_entry(self.store.mem_events, func_names)

    def get_func_sample_data(self, func_names: Iterable[str]) -> Optional[FuncSampleData]:
        return fetch_map_entry(self.store.samples, func_names)

    def get_func_branch_data_regex(self, func_names: Iterable[str]) -> List[FuncBranchData]:
        return self.lto_maps.get_func_branch_data_regex(self.store, func_names)

    def get_func_mem_data_regex(self, func_names: Iterable[str]) -> List[FuncMemData]:
        return self.lto_maps.get_func_mem_data_regex(self.store, func_names)

    def get_all_funcs_branch_data(self) -> Dict[str, FuncBranchData]:
        return self.store.branches

    def get_all_funcs_mem_data(self) -> Dict[str, FuncMemData]:
        return self.store.mem_events

    def get_all_funcs_sample_data(self) -> Dict[str, FuncSampleData]:
        return self.store.samples

    def get_all_funcs_data(self) -> Dict[str, FuncBranchData]:
        return self.store.branches

    def has_locals_with_file_name(self) -> bool:
        """True if some profiled function is a local of the form `file/func/N`."""
        return any(
            name.count("/") == 2 and not name.startswith("/")
            for name in self.store.branches
        )

    def has_lbr(self) -> bool:
        return not self.store.no_lbr_mode

    def uses_event(self, name: str) -> bool:
        return any(name in event for event in self.store.event_names)

    def get_event_names(self) -> Set[str]:
        return self.store.event_names

    def dump(self) -> None:
        """Write every parsed record to the diagnostic console."""
        def out(text: str) -> None:
            self.diag.print(text, markup=False, highlight=False, soft_wrap=True)

        for name, fbd in self.store.branches.items():
            out(f"{name} branches:")
            for bi in fbd.data:
                out(bi.to_fdata())
            out(f"{name} entry points:")
            for bi in fbd.entry_data:
                out(bi.to_fdata())

        for event in sorted(self.store.event_names):
            out(f"Data was collected with event: {event}")

        for name, fsd in self.store.samples.items():
            out(f"{name} samples:")
            for si in fsd.data:
                out(si.to_fdata())

        for name, fmd in self.store.mem_events.items():
            out(f"Memory events for {name}")
            last: Optional[Location] = None
            line = ""
            for mi in fmd.data:
                if mi.offset == last:
                    line += f", {mi.addr}/{mi.count}"
                else:
                    if line:
                        out(line)
                    line = str(mi)
                last = mi.offset
            if line:
                out(line)


def read_perf_data(path: str, diag: Console) -> DataReader:
    """Load `path` and parse it. Raises RuntimeError if it can't be read or parsed."""
    try:
        with open(path, "rb") as f:
            buffer = f.read()
    except OSError as e:
        raise RuntimeError(f"Cannot read profile {path}: {e}") from e

    reader = DataReader(buffer, diag)
    if not reader.parse():
        raise RuntimeError(f"Failed to parse profile {path}")
    return reader
