from __future__ import annotations

from collections.abc import Callable

import pytest

import tpirecon


def _require_callable(name: str) -> Callable[..., object]:
    symbol = getattr(tpirecon, name, None)
    assert callable(symbol), f"Missing summary API symbol: tpirecon.{name}"
    return symbol


def _block(kind: str, name: str, type_id: int = 0x1000) -> tpirecon.DeclarationBlock:
    return tpirecon.DeclarationBlock(kind, type_id, name, f"{kind} {name};")


def _make_result(
    *,
    blocks: tuple[tpirecon.DeclarationBlock, ...] = (),
    diagnostics: tuple[tpirecon.Diagnostic, ...] = (),
) -> tpirecon.Reconstruction:
    return tpirecon.Reconstruction(blocks, diagnostics)


def _overlaps(count: int) -> tuple[tpirecon.Diagnostic, ...]:
    return tuple(
        tpirecon.Diagnostic("LAYOUT_OVERLAP", 0x1000 + i, f"member {i} overlaps")
        for i in range(count)
    )


def test_summary_api_is_exposed() -> None:
    for name in (
        "build_reconstruction_summary",
        "format_reconstruction_summary",
        "print_reconstruction_summary",
    ):
        _require_callable(name)


def test_build_summary_counts_blocks_by_kind_in_fixed_order() -> None:
    result = _make_result(
        blocks=(
            _block("forward", "B"),
            _block("struct", "A"),
            _block("struct", "B"),
            _block("enum", "Color"),
            _block("class", "Widget"),
        )
    )

    summary = tpirecon.build_reconstruction_summary(result, "app.tpi")

    assert summary.source_label == "app.tpi"
    assert summary.output_label == "stdout"
    assert summary.block_counts == (
        ("struct", 2),
        ("class", 1),
        ("union", 0),
        ("interface", 0),
        ("enum", 1),
        ("forward", 1),
    )
    assert summary.total_diagnostics == 0


def test_build_summary_counts_diagnostics_by_code() -> None:
    diagnostics = (
        tpirecon.Diagnostic("UNRESOLVED_REFERENCE", 0x1FFF, "type 0x1fff is not defined"),
        *_overlaps(2),
    )

    summary = tpirecon.build_reconstruction_summary(
        _make_result(diagnostics=diagnostics), "app.tpi", "out.h"
    )

    assert summary.diagnostic_counts == (("LAYOUT_OVERLAP", 2), ("UNRESOLVED_REFERENCE", 1))
    assert summary.diagnostics == diagnostics
    assert summary.output_label == "out.h"


def test_build_summary_truncates_echoed_diagnostics_but_keeps_total() -> None:
    summary = tpirecon.build_reconstruction_summary(
        _make_result(diagnostics=_overlaps(15)), "app.tpi"
    )

    assert len(summary.diagnostics) == tpirecon.SUMMARY_DIAGNOSTIC_LIMIT
    assert summary.total_diagnostics == 15


def test_format_summary_without_diagnostics() -> None:
    summary = tpirecon.build_reconstruction_summary(
        _make_result(blocks=(_block("struct", "Point"),)), "app.tpi"
    )

    text = tpirecon.format_reconstruction_summary(summary)

    assert text.splitlines() == [
        "Reconstructed app.tpi:",
        "",
        "  Output:     stdout",
        "",
        "  Declarations:",
        "    Structs:" + " " * 10 + "1",
        "    Classes:" + " " * 10 + "0",
        "    Unions:" + " " * 11 + "0",
        "    Interfaces:" + " " * 7 + "0",
        "    Enums:" + " " * 12 + "0",
        "    Forward:" + " " * 10 + "0",
        "",
        "  Diagnostics: 0",
    ]
    assert text.endswith("\n")
    assert not text.endswith("\n\n")


def test_format_summary_lists_diagnostics_and_remainder() -> None:
    summary = tpirecon.build_reconstruction_summary(
        _make_result(diagnostics=_overlaps(12)), "app.tpi"
    )

    lines = tpirecon.format_reconstruction_summary(summary).splitlines()

    assert "  Diagnostics: 12" in lines
    assert "    LAYOUT_OVERLAP" + " " * 24 + "12" in lines
    assert "    LAYOUT_OVERLAP [0x1000]: member 0 overlaps" in lines
    assert "    LAYOUT_OVERLAP [0x100b]: member 11 overlaps" not in lines
    assert lines[-1] == "    ... and 2 more"


def test_print_summary_writes_to_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    summary = tpirecon.build_reconstruction_summary(_make_result(), "app.tpi")

    tpirecon.print_reconstruction_summary(summary)

    captured = capsys.readouterr()
    assert captured.out == ""
    assert captured.err == tpirecon.format_reconstruction_summary(summary)


def test_summary_is_frozen() -> None:
    summary = tpirecon.build_reconstruction_summary(_make_result(), "app.tpi")

    with pytest.raises(AttributeError):
        summary.total_diagnostics = 3


def test_format_type_list_table() -> None:
    text = tpirecon.format_type_list([("Point", 0x1001), ("ns::Color", 0x1005)], "o")

    assert text.splitlines() == [
        "2 types matching 'o':",
        "",
        "  0x1001  Point",
        "  0x1005  ns::Color",
    ]


def test_format_type_list_without_filter() -> None:
    assert tpirecon.format_type_list([], "").splitlines()[0] == "0 types:"
