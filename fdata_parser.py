#!/usr/bin/env python3
"""
fdata_parser.py - Line-oriented parser for the fdata profile format

Expected records (space separated, one per line):

  LBR branch:   <flag> <name> <hex off> <flag> <name> <hex off> <mispreds> <branches>
  no-LBR sample: <flag> <name> <hex off> <count>
  memory load:   <mflag> <name> <hex off> <mflag> <name> <hex addr> <count>

where <flag> is 0 for a DSO/load-address location, 1 for a global symbol and 2
for a local symbol, and <mflag> is the same plus 3 (3, 4, 5).

A file whose first line starts with `no_lbr` holds samples instead of branches;
the rest of that line lists the perf events the samples were collected with:

  no_lbr cycles:u
  1 BZ2_compressBlock 466c 3

A branch record can carry its branch histories. The record line then ends with
the number of histories, and each history is a `<mispreds> <branches> <length>`
line followed by <length> lines of `<location> <location>` pairs:

  2 t2.c/func 11 1 globalfunc 1d 0 1775 2
    0 1002 2
    2 t2.c/func 31 2 t2.c/func d
    2 t2.c/func 18 2 t2.c/func 20
    0 773 2
    2 t2.c/func 71 2 t2.c/func d
    2 t2.c/func 18 2 t2.c/func 60

Histories are checked and skipped; the record keeps the totals on its first
line, which already add up the histories.

Every failure is written to the diagnostic console with its line and column
before FdataParseError is raised.
"""

from __future__ import annotations

import re
from typing import List, Optional, Set, Tuple

from rich.console import Console

from fdata_model import BranchInfo, Location, MemInfo, SampleInfo

FIELD_SEPARATOR = " "
NO_LBR_MARKER = "no_lbr"

BRANCH_LOCATION_FLAGS = {"0": False, "1": True, "2": True}
MEM_LOCATION_FLAGS = {"3": False, "4": True, "5": True}

_DECIMAL_RE = re.compile(r"-?[0-9]+")
_HEX_RE = re.compile(r"[0-9a-fA-F]+")

BranchContext = List[Tuple[Location, Location]]


class FdataParseError(ValueError):
    """A grammar error; the parse pass it came from cannot be resumed."""

    def __init__(self, line: int, column: int, message: str):
        super().__init__(f"line {line}, column {column}: {message}")
        self.line = line
        self.column = column
        self.message = message


class LineParser:
    """
    Cursor over an fdata buffer. `line` is 1-based, `col` counts the characters
    already consumed on the current line.
    """

    def __init__(self, text: str, diag: Console):
        self.buf = text
        self.pos = 0
        self.line = 1
        self.col = 0
        self.diag = diag

    def error(self, message: str, column: Optional[int] = None, line: Optional[int] = None) -> FdataParseError:
        """Report `message` at the cursor (or `line`/`column`) and return the exception to raise."""
        col = self.col if column is None else column
        line = self.line if line is None else line
        self.diag.print(
            f"Error reading fdata input: line {line}, column {col}: {message}",
            markup=False, highlight=False, soft_wrap=True,
        )
        return FdataParseError(line, col, message)

    def _peek(self) -> str:
        return self.buf[self.pos] if self.pos < len(self.buf) else ""

    def _advance(self, n: int) -> None:
        self.pos += n
        self.col += n

    def at_end(self) -> bool:
        return self.pos >= len(self.buf)

    def expect_and_consume_fs(self) -> None:
        if self._peek() != FIELD_SEPARATOR:
            raise self.error("expected field separator")
        self._advance(1)

    def consume_all_remaining_fs(self) -> None:
        while self._peek() == FIELD_SEPARATOR:
            self._advance(1)

    def check_and_consume_newline(self) -> bool:
        """Consume the end of the current record. End of input also ends a record."""
        if self.at_end():
            return True
        if self.buf[self.pos] != "\n":
            return False
        self.pos += 1
        self.line += 1
        self.col = 0
        return True

    def parse_string(self, end_char: str, end_nl: bool = False) -> str:
        """
        Read a field terminated by `end_char` on the current line. With
        `end_nl` the end of the line also terminates the field, and the
        newline is left for check_and_consume_newline().
        """
        line_end = self.buf.find("\n", self.pos)
        if line_end < 0:
            line_end = len(self.buf)

        end = self.buf.find(end_char, self.pos, line_end)
        consume = end >= 0
        if not consume:
            if not end_nl:
                raise self.error("malformed field")
            end = line_end

        if end == self.pos:
            raise self.error("malformed field")

        value = self.buf[self.pos:end]
        self._advance(end - self.pos + (1 if consume else 0))
        return value

    def parse_number_field(self, end_char: str, end_nl: bool = False) -> int:
        start_line, start_col = self.line, self.col
        field = self.parse_string(end_char, end_nl)
        if not _DECIMAL_RE.fullmatch(field):
            raise self.error("expected decimal number", start_col, start_line)
        return int(field, 10)

    def parse_hex_field(self, end_char: str, end_nl: bool = False) -> int:
        start_line, start_col = self.line, self.col
        field = self.parse_string(end_char, end_nl)
        if not _HEX_RE.fullmatch(field):
            raise self.error("expected hexadecimal number", start_col, start_line)
        return int(field, 16)

    def parse_location(self, end_char: str, end_nl: bool = False, expect_mem_loc: bool = False) -> Location:
        flags = MEM_LOCATION_FLAGS if expect_mem_loc else BRANCH_LOCATION_FLAGS
        is_symbol = flags.get(self._peek())
        if is_symbol is None:
            raise self.error("expected 3, 4 or 5" if expect_mem_loc else "expected 0, 1 or 2")
        self._advance(1)
        self.expect_and_consume_fs()
        name = self.parse_string(FIELD_SEPARATOR)
        offset = self.parse_hex_field(end_char, end_nl)
        return Location(is_symbol, name, offset)

    def parse_mem_location(self, end_char: str, end_nl: bool = False) -> Location:
        return self.parse_location(end_char, end_nl, expect_mem_loc=True)

    def _expect_end_of_record(self) -> None:
        if not self.check_and_consume_newline():
            raise self.error("expected end of line")

    def parse_branch_history(self) -> Tuple[int, int, BranchContext]:
        """One history block: its counts and the edges that led to the branch."""
        self.consume_all_remaining_fs()
        mispreds = self.parse_number_field(FIELD_SEPARATOR)
        branches = self.parse_number_field(FIELD_SEPARATOR)
        start_col = self.col
        length = self.parse_number_field(FIELD_SEPARATOR, end_nl=True)
        if length <= 0:
            raise self.error("branch history must contain at least one edge", start_col)
        self._expect_end_of_record()

        context: BranchContext = []
        for _ in range(length):
            self.consume_all_remaining_fs()
            ctx_from = self.parse_location(FIELD_SEPARATOR)
            ctx_to = self.parse_location(FIELD_SEPARATOR, end_nl=True)
            self._expect_end_of_record()
            context.append((ctx_from, ctx_to))
        return mispreds, branches, context

    def parse_branch_info(self) -> BranchInfo:
        from_loc = self.parse_location(FIELD_SEPARATOR)
        to_loc = self.parse_location(FIELD_SEPARATOR)
        mispreds = self.parse_number_field(FIELD_SEPARATOR)
        branches = self.parse_number_field(FIELD_SEPARATOR, end_nl=True)

        if not self.check_and_consume_newline():
            start_col = self.col
            num_histories = self.parse_number_field(FIELD_SEPARATOR, end_nl=True)
            if num_histories < 0:
                raise self.error("expected a non-negative history count", start_col)
            self._expect_end_of_record()
            for _ in range(num_histories):
                self.parse_branch_history()

        return BranchInfo(from_loc, to_loc, mispreds, branches)

    def parse_sample_info(self) -> SampleInfo:
        loc = self.parse_location(FIELD_SEPARATOR)
        hits = self.parse_number_field(FIELD_SEPARATOR, end_nl=True)
        self._expect_end_of_record()
        return SampleInfo(loc, hits)

    def parse_mem_info(self) -> MemInfo:
        offset = self.parse_mem_location(FIELD_SEPARATOR)
        addr = self.parse_mem_location(FIELD_SEPARATOR)
        count = self.parse_number_field(FIELD_SEPARATOR, end_nl=True)
        self._expect_end_of_record()
        return MemInfo(offset, addr, count)

    def maybe_parse_no_lbr_flag(self, event_names: Set[str]) -> bool:
        """
        Consume a leading `no_lbr [event ...]` line, adding its event names to
        `event_names`. Leaves the cursor untouched and returns False otherwise.
        """
        if not self.buf.startswith(NO_LBR_MARKER, self.pos):
            return False
        if self.buf[self.pos + len(NO_LBR_MARKER):][:1] not in ("", FIELD_SEPARATOR, "\n"):
            return False
        self._advance(len(NO_LBR_MARKER))
        if self._peek() == FIELD_SEPARATOR:
            self._advance(1)
        while self._peek() not in ("", "\n"):
            event_names.add(self.parse_string(FIELD_SEPARATOR, end_nl=True))
        self.check_and_consume_newline()
        return True

    def has_branch_data(self) -> bool:
        return self._peek() in BRANCH_LOCATION_FLAGS

    def has_mem_data(self) -> bool:
        return self._peek() in MEM_LOCATION_FLAGS

    def expect_end_of_input(self) -> None:
        """Anything left after the last record must be blank."""
        if self.buf[self.pos:].strip():
            raise self.error("unexpected record")
