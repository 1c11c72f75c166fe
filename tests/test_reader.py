import io

import pytest
from rich.console import Console

from fdata_model import Location
from fdata_reader import DataReader, ReaderState, read_perf_data

LBR_PROFILE = (
    "1 main 3fb 0 /lib/ld-2.21.so 12 4 221\n"
    "1 main 10 1 foo 0 1 20\n"
    "1 main 10 1 foo 0 0 5\n"
    "1 foo 8 1 foo 20 2 30\n"
    "0 /lib/ld.so 40 1 main 0 0 7\n"
    "0 /lib/ld.so 40 0 /lib/ld.so 50 0 9\n"
    "4 main 20 3 [heap] 1000 3\n"
    "4 main 20 3 [heap] 2000 1\n"
    "3 [unknown] 0 4 main 0 1\n"
)

LTO_PROFILE = (
    "1 foo.lto_priv.3 0 1 foo.lto_priv.3 10 0 1\n"
    "1 foo.lto_priv.7 0 1 foo.lto_priv.7 10 0 2\n"
    "4 foo.lto_priv.3 4 3 [heap] 0 1\n"
)


def make_reader(text):
    out = io.StringIO()
    return DataReader(text, Console(file=out, width=200)), out


def test_no_lbr_samples_merge():
    reader, _ = make_reader("no_lbr\n1 main 10 5\n1 main 10 3\n")
    assert reader.parse_in_no_lbr_mode()
    assert reader.state is ReaderState.COMPLETE
    assert not reader.has_lbr()
    fsd = reader.get_func_sample_data(["main"])
    assert len(fsd.data) == 1
    assert fsd.data[0].loc.offset == 0x10
    assert fsd.data[0].hits == 8


def test_parse_switches_to_no_lbr_on_marker():
    reader, _ = make_reader(b"no_lbr cycles:u\n1 main 10 5\n0 libc.so 10 4\n1 main 20 1\n")
    assert reader.parse()
    assert not reader.has_lbr()
    assert list(reader.get_all_funcs_sample_data()) == ["main"]
    assert reader.get_func_sample_data(["main"]).get_samples(0, 0x100) == 6
    assert reader.uses_event("cycles")
    assert not reader.uses_event("instructions")
    assert reader.get_event_names() == {"cycles:u"}


def test_no_lbr_mode_without_marker():
    reader, _ = make_reader("1 main 10 5\n")
    assert reader.parse_in_no_lbr_mode()
    assert reader.get_func_sample_data(["main"]).data[0].hits == 5


def test_missing_offset_fails_on_line_one():
    reader, out = make_reader("1 main\n")
    assert not reader.parse()
    assert reader.state is ReaderState.FAILED
    assert "line 1" in out.getvalue()


def test_failed_record_is_not_committed():
    reader, out = make_reader("1 main 10 1 main 20 0 1\n1 main 30 1 main 40 0 x\n")
    assert not reader.parse()
    assert "line 2" in out.getvalue()
    assert len(reader.store.branches["main"].data) == 1


def test_empty_profile_fails():
    reader, out = make_reader("")
    assert not reader.parse()
    assert "no valid profile data found" in out.getvalue()


def test_trailing_garbage_fails():
    reader, out = make_reader("1 main 10 1 main 20 0 1\nxyz\n")
    assert not reader.parse()
    assert "line 2, column 0: unexpected record" in out.getvalue()


def test_parse_only_once():
    reader, _ = make_reader("1 main 10 1 main 20 0 1\n")
    assert reader.parse()
    with pytest.raises(RuntimeError):
        reader.parse()


def test_lbr_records_are_routed():
    reader, _ = make_reader(LBR_PROFILE)
    assert reader.parse()
    assert reader.has_lbr()
    assert set(reader.get_all_funcs_branch_data()) == {"main", "foo", "/lib/ld.so"}

    main = reader.get_func_branch_data(["main"])
    assert len(main.data) == 2
    call = main.get_direct_call_branch(0x10)
    assert call.to_loc == Location(True, "foo", 0)
    assert (call.mispreds, call.branches) == (1, 25)
    assert main.execution_count == 7
    assert [bi.from_loc for bi in main.entry_data] == [Location(False, "/lib/ld.so", 0x40)]

    foo = reader.get_func_branch_data(["foo"])
    assert foo.execution_count == 25
    assert foo.entry_data[0].branches == 25
    assert foo.get_branch(8, 0x20).branches == 30

    mem = reader.get_func_mem_data(["main"])
    loads = mem.get_mem_info_range(0x20)
    assert len(loads) == 1
    assert loads[0].count == 4
    assert list(reader.get_all_funcs_mem_data()) == ["main"]


def test_missing_function_is_not_found():
    reader, _ = make_reader(LBR_PROFILE)
    assert reader.parse()
    assert reader.get_func_branch_data({"nonexistent"}) is None
    assert reader.get_func_mem_data(["foo"]) is None
    assert reader.get_func_sample_data(["main"]) is None


def test_histories_keep_record_totals():
    reader, _ = make_reader(
        "2 t2.c/func 11 1 globalfunc 1d 0 1775 2\n"
        "  0 1002 2\n"
        "  2 t2.c/func 31 2 t2.c/func d\n"
        "  2 t2.c/func 18 2 t2.c/func 20\n"
        "  0 773 2\n"
        "  2 t2.c/func 71 2 t2.c/func d\n"
        "  2 t2.c/func 18 2 t2.c/func 60\n"
    )
    assert reader.parse()
    func = reader.get_func_branch_data(["t2.c/func"])
    assert len(func.data) == 1
    assert func.data[0].branches == 1775
    target = reader.get_func_branch_data(["globalfunc"])
    assert target.entry_data[0].branches == 1775
    assert target.execution_count == 0


def test_names_with_invalid_utf8_stay_distinct():
    reader, _ = make_reader(b"1 f\xff 0 1 f\xff 4 0 1\n1 f\xfe 0 1 f\xfe 4 0 2\n")
    assert reader.parse()
    branches = reader.get_all_funcs_branch_data()
    assert len(branches) == 2
    counts = {name.encode("utf-8", "surrogateescape"): fbd.total_branches for name, fbd in branches.items()}
    assert counts == {b"f\xff": 1, b"f\xfe": 2}


def test_locals_with_file_name():
    reader, _ = make_reader(LBR_PROFILE)
    assert reader.parse()
    assert not reader.has_locals_with_file_name()

    reader, _ = make_reader("2 t2.c/foo/1 10 2 t2.c/foo/1 20 0 3\n")
    assert reader.parse()
    assert reader.has_locals_with_file_name()


def test_lto_fuzzy_lookup():
    reader, _ = make_reader(LTO_PROFILE)
    assert reader.parse()
    found = reader.get_func_branch_data_regex(["foo.lto_priv.9"])
    assert sorted(d.name for d in found) == ["foo.lto_priv.3", "foo.lto_priv.7"]
    assert [d.name for d in reader.get_func_branch_data_regex(["foo.lto_priv.7"])] == ["foo.lto_priv.7"]
    assert [d.name for d in reader.get_func_mem_data_regex(["foo.constprop.1"])] == ["foo.lto_priv.3"]


def test_dump_lists_records():
    reader, out = make_reader(LBR_PROFILE)
    assert reader.parse()
    reader.dump()
    text = out.getvalue()
    assert "main branches:" in text
    assert "1 main 10 1 foo 0 1 25" in text
    assert "0 /lib/ld.so 40 1 main 0 0 7" in text
    assert "foo entry points:" in text
    assert "Memory events for main" in text
    assert "main+20: 1000/4" in text


def test_dump_lists_samples_as_fdata_lines():
    reader, out = make_reader("no_lbr cycles:u\n1 main 10 5\n1 main 10 3\n")
    assert reader.parse()
    reader.dump()
    text = out.getvalue()
    assert "Data was collected with event: cycles:u" in text
    assert "main samples:" in text
    assert "1 main 10 8" in text


def test_read_perf_data(tmp_path):
    path = tmp_path / "perf.fdata"
    path.write_text(LBR_PROFILE)
    diag = Console(file=io.StringIO())
    reader = read_perf_data(str(path), diag)
    assert reader.state is ReaderState.COMPLETE

    with pytest.raises(RuntimeError, match="Cannot read profile"):
        read_perf_data(str(tmp_path / "missing.fdata"), diag)

    bad = tmp_path / "bad.fdata"
    bad.write_text("1 main\n")
    with pytest.raises(RuntimeError, match="Failed to parse"):
        read_perf_data(str(bad), diag)
