#!/usr/bin/env python3
"""
LTO name matching for profile lookups.

LTO-generated function names take a form:

  <function_name>.lto_priv.<decimal_number>
  <function_name>.constprop.<decimal_number>
  <function_name>.lto_priv.<decimal_number1>.lto_priv.<decimal_number2>

The decimal number is a global counter over the whole program, so a tiny change
to the program renumbers many of these functions and an exact name match leaves
them without a profile. Instead, every profile entry is filed under the part of
its name before the first marker (its "common name"), and a function that finds
no exact match gets every entry of its family back. Picking the best one out of
the family is left to the caller.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, TypeVar

from fdata_model import FuncBranchData, FuncMemData, ProfileStore

LTO_MARKERS = (".lto_priv.", ".constprop.")

_LTO_SUFFIX_RE = re.compile("(?:" + "|".join(re.escape(m) for m in LTO_MARKERS) + r")[0-9]")

T = TypeVar("T")


def get_lto_common_name(name: str) -> Optional[str]:
    """Prefix of `name` before its first LTO marker, or None if it has none."""
    m = _LTO_SUFFIX_RE.search(name)
    if m is None:
        return None
    return name[:m.start()]


def reduce_lto_name(name: str) -> Optional[str]:
    """Strip LTO markers until none is left. None if `name` had no marker at all."""
    common = get_lto_common_name(name)
    if common is None:
        return None
    while True:
        shorter = get_lto_common_name(common)
        if shorter is None:
            return common
        common = shorter


def _as_name_list(func_names: Iterable[str]) -> List[str]:
    if isinstance(func_names, str):
        return [func_names]
    return list(func_names)


def fetch_map_entry(entries: Dict[str, T], func_names: Iterable[str]) -> Optional[T]:
    """Entry for the last of `func_names` present in `entries`."""
    # The name used in the profile is most often the last alias.
    for name in reversed(_as_name_list(func_names)):
        entry = entries.get(name)
        if entry is not None:
            return entry
    return None


def fetch_map_entries_regex(entries: Dict[str, T], common_name_map: Dict[str, List[T]],
                            func_names: Iterable[str]) -> List[T]:
    """
    [exact match] if any candidate name is in `entries`, otherwise every entry
    sharing a common LTO name with one of the candidates.
    """
    names = _as_name_list(func_names)
    exact = fetch_map_entry(entries, names)
    if exact is not None:
        return [exact]

    matches: List[T] = []
    seen = set()
    for name in reversed(names):
        common = reduce_lto_name(name)
        if common is None:
            continue
        for entry in common_name_map.get(common, []):
            if id(entry) not in seen:
                seen.add(id(entry))
                matches.append(entry)
    return matches


class LTONameMaps:
    """Common LTO name -> profile entries, built once from a complete store."""

    def __init__(self) -> None:
        self.branches: Dict[str, List[FuncBranchData]] = {}
        self.mem_events: Dict[str, List[FuncMemData]] = {}

    @classmethod
    def build(cls, store: ProfileStore) -> LTONameMaps:
        maps = cls()
        for name, fbd in store.branches.items():
            common = reduce_lto_name(name)
            if common is not None:
                maps.branches.setdefault(common, []).append(fbd)
        for name, fmd in store.mem_events.items():
            common = reduce_lto_name(name)
            if common is not None:
                maps.mem_events.setdefault(common, []).append(fmd)
        return maps

    def get_func_branch_data_regex(self, store: ProfileStore, func_names: Iterable[str]) -> List[FuncBranchData]:
        return fetch_map_entries_regex(store.branches, self.branches, func_names)

    def get_func_mem_data_regex(self, store: ProfileStore, func_names: Iterable[str]) -> List[FuncMemData]:
        return fetch_map_entries_regex(store.mem_events, self.mem_events, func_names)
