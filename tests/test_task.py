import gzip
import logging

import pytest

from mistpy import task as mist_task
from mistpy.mistClasses import MIST_HEADER, ChromosomeInfo
from mistpy.task import InvalidParameterError, MistTask, TaskStatus

ANNOTATION_HEADER = "chrom\tstart\tend\tgene_id\tgene_name\texon_number\texon_id\ttranscript_name\ttranscript_info\tgene_biotype"

# Low-coverage positions per chromosome; every other position has depth 50
LOW = {
    "chr1": {1000: 5, 1001: 4, 1002: 8, 1003: 9, 1004: 10, 1005: 11, 1006: 9,
             **{p: 0 for p in range(1995, 2003)}},
    "chr2": {p: 2 for p in range(95, 116)},
}
LENGTHS = {"chr1": 3000, "chr2": 500}


def _exon(chrom, start, end, n):
    return f"{chrom}\t{start}\t{end}\tG{n}\tGENE{n}\t{n}\tE{n}\tT{n}\tinfo\tprotein_coding"


def _write_annotation(path, rows):
    with gzip.open(path, "wt") as fh:
        fh.write(ANNOTATION_HEADER + "\n")
        for row in rows:
            fh.write(row + "\n")
    return path


def _header_reader(chroms=None):
    def read(bam_path, logger=None):
        return [ChromosomeInfo(name, length) for name, length in (chroms or LENGTHS).items()]
    return read


def _coverage_source(calls=None):
    def source(chrom, bam_path):
        if calls is not None:
            calls.append(chrom)
        low = LOW.get(chrom, {})
        for pos in range(1, LENGTHS[chrom] + 1):
            yield f"{chrom}\t{pos}\tN\t{low.get(pos, 50)}\t.\tI\n"
    return source


DEFAULT_ROWS = [
    _exon("chr1", 1000, 1006, 1),
    _exon("chr1", 2000, 2010, 2),
    _exon("chrUn", 10, 20, 3),
    _exon("chr2", 100, 110, 4),
]


def _task(tmp_path, rows=DEFAULT_ROWS, out="result", **kwargs):
    annotation = _write_annotation(tmp_path / "exons.tsv.gz", rows)
    kwargs.setdefault("header_reader", _header_reader())
    kwargs.setdefault("coverage_source", _coverage_source())
    return MistTask(tmp_path / "sample.bam", tmp_path / out, 10, 1, annotation=annotation, **kwargs)


def _rows(path):
    return [line.split("\t") for line in path.read_text().splitlines()]


def test_end_to_end_regions(tmp_path):
    t = _task(tmp_path)
    result = t.run()
    assert result.status is TaskStatus.SUCCEEDED
    assert result.matches == 4
    assert result.message == "Finished successfully: 4 regions found"
    assert t.output == tmp_path / "result.mist"

    rows = _rows(t.output)
    assert rows[0] == MIST_HEADER
    assert [(r[0], r[3], r[4], r[11]) for r in rows[1:]] == [
        ("chr1", "1000", "1003", "inside"),
        ("chr1", "1006", "1006", "inside"),
        ("chr1", "1995", "2002", "left"),
        ("chr2", "95", "115", "overlap"),
    ]
    assert rows[3] == ["chr1", "2000", "2010", "1995", "2002", "G2", "GENE2", "2", "E2", "T2", "protein_coding", "left"]
    assert all(c.loaded for c in t.chromosomes)


def test_minimum_length_filter(tmp_path):
    annotation = _write_annotation(tmp_path / "exons.tsv.gz", DEFAULT_ROWS[:1])
    t = MistTask(tmp_path / "s.bam", tmp_path / "r.mist", 10, 3, annotation=annotation,
                 header_reader=_header_reader(), coverage_source=_coverage_source())
    assert t.run().matches == 1
    assert [(r[3], r[4]) for r in _rows(t.output)[1:]] == [("1000", "1003")]


def test_missing_chromosome_is_skipped(tmp_path, caplog):
    logger = logging.getLogger("mistpy.test")
    calls = []
    t = _task(tmp_path, logger=logger, coverage_source=_coverage_source(calls))
    with caplog.at_level(logging.WARNING, logger="mistpy.test"):
        result = t.run()
    assert result.status is TaskStatus.SUCCEEDED
    assert "Missing chromosome: chrUn" in caplog.text
    assert calls == ["chr1", "chr2"]
    assert all(r[0] != "chrUn" for r in _rows(t.output))


def test_chromosome_reloaded_only_on_switch(tmp_path):
    calls = []
    rows = DEFAULT_ROWS[:2] + [_exon("chr2", 100, 110, 4), _exon("chr1", 1000, 1006, 5)]
    t = _task(tmp_path, rows=rows, coverage_source=_coverage_source(calls))
    assert t.run().status is TaskStatus.SUCCEEDED
    assert calls == ["chr1", "chr2", "chr1"]


def test_empty_catalog_finds_nothing(tmp_path):
    t = _task(tmp_path, header_reader=_header_reader({}))
    result = t.run()
    assert result.status is TaskStatus.SUCCEEDED
    assert result.matches == 0
    assert _rows(t.output) == [MIST_HEADER]


def test_progress_published_to_observers(tmp_path):
    states = []
    t = _task(tmp_path, report_every=100)
    t.add_observer(states.append)
    t.run()
    assert len(states) > 2
    assert states[-1].fraction == 1.0
    assert states[-1].match_count == 4
    assert t.progress is states[-1]
    fractions = [s.fraction for s in states]
    assert fractions == sorted(fractions)


def test_failing_observer_does_not_stop_run(tmp_path):
    def broken(state):
        raise RuntimeError("display gone")

    t = _task(tmp_path, report_every=100)
    t.add_observer(broken)
    assert t.run().status is TaskStatus.SUCCEEDED


def test_cancel_keeps_written_regions(tmp_path):
    t = _task(tmp_path, report_every=100)

    def cancel_on_chr2(state):
        if state.current_coordinate.startswith("chr2"):
            t.cancel()

    t.add_observer(cancel_on_chr2)
    result = t.run()
    assert result.status is TaskStatus.CANCELLED
    assert result.message == "Cancelled"
    rows = _rows(t.output)
    assert rows[0] == MIST_HEADER
    assert len(rows) == 1 + result.matches == 4
    assert all(len(r) == len(MIST_HEADER) for r in rows)
    assert all(r[0] == "chr1" for r in rows[1:])


def test_cancel_before_start(tmp_path):
    t = _task(tmp_path)
    t.cancel()
    result = t.run()
    assert result.status is TaskStatus.CANCELLED
    assert _rows(t.output) == [MIST_HEADER]


def test_malformed_annotation_fails_run(tmp_path):
    rows = [DEFAULT_ROWS[0], "chr1\tnot-a-number\t2010\tG\tGENE\t1\tE\tT\tinfo\tprotein_coding"]
    t = _task(tmp_path, rows=rows)
    result = t.run()
    assert result.status is TaskStatus.FAILED
    assert result.message == "Finished with errors: 2 regions found"
    assert len(_rows(t.output)) == 3


def test_missing_annotation_file_fails_run(tmp_path):
    t = MistTask(tmp_path / "s.bam", tmp_path / "r", 10, 1, annotation=tmp_path / "nope.tsv.gz",
                 header_reader=_header_reader(), coverage_source=_coverage_source())
    assert t.run().status is TaskStatus.FAILED


def test_rerun_is_idempotent(tmp_path):
    t = _task(tmp_path)
    t.run()
    first = t.output.read_bytes()
    t.run()
    assert t.output.read_bytes() == first
    assert t.matches == 4


def test_background_run(tmp_path):
    t = _task(tmp_path, workers=2, report_every=50)
    t.start()
    result = t.join(timeout=30)
    assert result is not None
    assert result.status is TaskStatus.SUCCEEDED
    assert result.matches == 4


def test_open_runs_option(tmp_path):
    # low coverage runs straight through the end of the padded window
    rows = [_exon("chr2", 80, 100, 1)]
    closed = _task(tmp_path, rows=rows, out="closed").run()
    opened = _task(tmp_path, rows=rows, out="open", emit_open_runs=True)
    assert closed.matches == 0
    assert opened.run().matches == 1
    assert [(r[3], r[4], r[11]) for r in _rows(opened.output)[1:]] == [("95", "109", "right")]


@pytest.mark.parametrize("threshold,length,field", [
    ("abc", 1, "threshold"),
    (10, "x", "length"),
    (0, 1, "threshold"),
    (10, -2, "length"),
    (2.5, 1, "threshold"),
])
def test_invalid_parameters_rejected_before_start(tmp_path, threshold, length, field):
    with pytest.raises(InvalidParameterError) as exc:
        MistTask(tmp_path / "s.bam", tmp_path / "r", threshold, length)
    assert exc.value.field == field
    assert not (tmp_path / "r.mist").exists()


def test_parameters_accept_numeric_strings():
    params = mist_task.MistParameters.from_values("10", "3")
    assert (params.threshold, params.length) == (10, 3)


def test_truncated_annotation_fails_run(tmp_path):
    rows = DEFAULT_ROWS + [_exon("chr1", 2500 + i, 2510 + i, i) for i in range(200)]
    annotation = _write_annotation(tmp_path / "exons.tsv.gz", rows)
    data = annotation.read_bytes()
    annotation.write_bytes(data[:len(data) // 2])

    t = _task(tmp_path, rows=[])
    t.annotation = annotation
    result = t.run()
    assert result.status is TaskStatus.FAILED
    rows_written = _rows(t.output)
    assert rows_written[0] == MIST_HEADER
    assert all(len(r) == len(MIST_HEADER) for r in rows_written)
