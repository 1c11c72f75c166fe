#!/usr/bin/env python3
"""
fdata_tool.py - Inspect an fdata profile from the command line

What it does:
- Loads and parses an fdata file (LBR or no_lbr)
- Prints a summary: mode, events, hottest functions by branches or samples,
  functions with the most memory loads
- Optionally runs name lookups from a YAML query file, exact or LTO-fuzzy
- Optionally writes an HTML summary (jinja2 templates in templates/)
- Optionally dumps every parsed record

Query file format:

  queries:
    - function: "foo.lto_priv.9"
      fuzzy: true
    - names: ["_ZN3fooEv", "foo"]
"""

from __future__ import annotations

import argparse
import dataclasses
import os
from typing import List, Optional

import yaml
from jinja2 import Environment, FileSystemLoader, select_autoescape
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fdata_reader import DataReader, read_perf_data

console = Console()


@dataclasses.dataclass
class FunctionSummary:
    name: str
    branches: int = 0
    mispreds: int = 0
    entries: int = 0
    execution_count: int = 0
    samples: int = 0
    mem_loads: int = 0

    @property
    def mispred_pct(self) -> float:
        return self.mispreds / self.branches * 100 if self.branches > 0 else 0.0


@dataclasses.dataclass
class QueryResult:
    names: List[str]
    fuzzy: bool
    branch_matches: List[str]
    mem_matches: List[str]
    sample_match: Optional[str] = None


def printable(name: str) -> str:
    """`name` with any undecodable profile bytes shown as \\x escapes."""
    return name.encode("utf-8", "surrogateescape").decode("utf-8", "backslashreplace")


def summarize_functions(reader: DataReader) -> List[FunctionSummary]:
    """One row per profiled function, hottest first."""
    rows = {}

    def row(name: str) -> FunctionSummary:
        if name not in rows:
            rows[name] = FunctionSummary(name=name)
        return rows[name]

    for name, fbd in reader.get_all_funcs_branch_data().items():
        r = row(name)
        r.branches = fbd.total_branches
        r.mispreds = fbd.total_mispreds
        r.entries = sum(bi.branches for bi in fbd.entry_data)
        r.execution_count = fbd.execution_count
    for name, fsd in reader.get_all_funcs_sample_data().items():
        row(name).samples = fsd.total_hits
    for name, fmd in reader.get_all_funcs_mem_data().items():
        row(name).mem_loads = fmd.total_count

    return sorted(rows.values(), key=lambda r: (-(r.branches + r.samples), -r.mem_loads, r.name))


def load_queries(path: str) -> List[dict]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict) or "queries" not in data:
        raise ValueError("query file must be a dict with top-level key 'queries'")
    if not isinstance(data["queries"], list):
        raise ValueError("'queries' must be a list")
    for q in data["queries"]:
        if not isinstance(q, dict) or not ("names" in q or "function" in q):
            raise ValueError(f"query entry needs 'names' or 'function': {q!r}")
        if "names" in q and not isinstance(q["names"], list):
            raise ValueError(f"'names' must be a list: {q!r}")
    return data["queries"]


def run_query(reader: DataReader, query: dict) -> QueryResult:
    names = [str(n) for n in query.get("names", [])]
    if "function" in query:
        names.append(str(query["function"]))
    fuzzy = bool(query.get("fuzzy", False))

    if fuzzy:
        branch = reader.get_func_branch_data_regex(names)
        mem = reader.get_func_mem_data_regex(names)
    else:
        fbd = reader.get_func_branch_data(names)
        fmd = reader.get_func_mem_data(names)
        branch = [fbd] if fbd else []
        mem = [fmd] if fmd else []
    fsd = reader.get_func_sample_data(names)

    return QueryResult(
        names=names,
        fuzzy=fuzzy,
        branch_matches=[d.name for d in branch],
        mem_matches=[d.name for d in mem],
        sample_match=fsd.name if fsd else None,
    )


def get_template_env() -> Environment:
    """Get Jinja2 template environment for the HTML summary"""
    script_dir = os.path.dirname(os.path.abspath(__file__))
    template_dir = os.path.join(script_dir, "templates")
    if not os.path.exists(template_dir):
        raise RuntimeError("Jinja2 templates not found. Ensure templates/ directory exists with index.html")

    env = Environment(
        loader=FileSystemLoader(template_dir),
        autoescape=select_autoescape(["html", "xml"]),
    )

    def basename_filter(path: str) -> str:
        """Extract basename from a file path"""
        return os.path.basename(path) if path else ""

    env.filters["basename"] = basename_filter
    env.filters["printable"] = printable
    return env


def render_index_page(reader: DataReader, summaries: List[FunctionSummary],
                      queries: List[QueryResult], source: str) -> str:
    template = get_template_env().get_template("index.html")
    return template.render(
        source=source,
        has_lbr=reader.has_lbr(),
        events=sorted(reader.get_event_names()),
        functions=summaries,
        queries=queries,
        has_locals_with_file_name=reader.has_locals_with_file_name(),
    )


def print_summary(reader: DataReader, summaries: List[FunctionSummary], top: int) -> None:
    mode = "LBR" if reader.has_lbr() else "no-LBR (samples)"
    console.print(f"\nProfile mode: [bold]{mode}[/bold]")
    events = reader.get_event_names()
    if events:
        console.print(f"Events: {', '.join(map(printable, sorted(events)))}", markup=False, highlight=False)
    console.print(
        f"Functions: {len(reader.get_all_funcs_branch_data())} with branches, "
        f"{len(reader.get_all_funcs_sample_data())} with samples, "
        f"{len(reader.get_all_funcs_mem_data())} with memory loads\n"
    )

    table = Table(title=f"Top {top} functions")
    table.add_column("Function", overflow="fold")
    if reader.has_lbr():
        table.add_column("Branches", justify="right")
        table.add_column("Mispred %", justify="right")
        table.add_column("Exec count", justify="right")
    else:
        table.add_column("Samples", justify="right")
    table.add_column("Mem loads", justify="right")

    for s in summaries[:top]:
        if reader.has_lbr():
            table.add_row(escape(printable(s.name)), str(s.branches), f"{s.mispred_pct:.1f}", str(s.execution_count), str(s.mem_loads))
        else:
            table.add_row(escape(printable(s.name)), str(s.samples), str(s.mem_loads))
    console.print(table)


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Inspect an fdata execution profile")
    ap.add_argument("profile", help="Path to the fdata profile")
    ap.add_argument("--queries", help="Path to a YAML file of function name lookups")
    ap.add_argument("--top", type=int, default=15, help="Number of hottest functions to show")
    ap.add_argument("--html", help="Output directory for an HTML summary")
    ap.add_argument("--dump", action="store_true", help="Dump every parsed record to stderr")
    args = ap.parse_args(argv)

    diag = Console(stderr=True)
    try:
        reader = read_perf_data(args.profile, diag)
    except RuntimeError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]", highlight=False)
        return 1

    summaries = summarize_functions(reader)
    print_summary(reader, summaries, args.top)

    results: List[QueryResult] = []
    if args.queries:
        try:
            queries = load_queries(args.queries)
        except (OSError, ValueError, yaml.YAMLError) as e:
            console.print(f"[red]Error: could not load queries: {escape(str(e))}[/red]", highlight=False)
            return 1
        console.print("")
        for q in queries:
            res = run_query(reader, q)
            results.append(res)
            kind = "fuzzy" if res.fuzzy else "exact"
            console.print(f"Query ({kind}) {', '.join(res.names)}", markup=False, highlight=False)
            if res.branch_matches or res.mem_matches or res.sample_match:
                if res.branch_matches:
                    console.print(f"  branches: {', '.join(map(printable, res.branch_matches))}", markup=False, highlight=False)
                if res.mem_matches:
                    console.print(f"  memory:   {', '.join(map(printable, res.mem_matches))}", markup=False, highlight=False)
                if res.sample_match:
                    console.print(f"  samples:  {printable(res.sample_match)}", markup=False, highlight=False)
            else:
                console.print("  [yellow]no profile found[/yellow]")

    if args.html:
        os.makedirs(args.html, exist_ok=True)
        index_path = os.path.join(args.html, "index.html")
        with open(index_path, "w", encoding="utf-8") as f:
            f.write(render_index_page(reader, summaries, results, args.profile))
        console.print(f"[green]HTML summary written: {index_path}[/green]")

    if args.dump:
        reader.dump()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
