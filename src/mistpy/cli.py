import argparse

from .catalog import genome_length, read_chromosomes
from .depth import DEFAULT_REPORT_EVERY, samtools_mpileup
from .progress import logging_observer
from .scan import WINDOW_SIZE
from .task import InvalidParameterError, MistTask, TaskStatus, _make_logger

EXIT_CODES = {
    TaskStatus.SUCCEEDED: 0,
    TaskStatus.FAILED: 1,
    TaskStatus.CANCELLED: 130,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Find regions of insufficient coverage around exons
    if args.cmd in ["run", "mist"]:
        return run_mist(args)

    # Print the sequence dictionary of BAM files
    elif args.cmd in ["chroms", "header"]:
        return show_chromosomes(args.bams, log_level=args.log_level)

    else:
        parser.error("Unknown command")

    return 2


def run_mist(args: argparse.Namespace) -> int:
    logger = _make_logger(args.log_level)
    try:
        task = MistTask(
            args.bam,
            args.out,
            args.threshold,
            args.length,
            annotation=args.annotation,
            coverage_source=samtools_mpileup(args.samtools),
            pad=args.pad,
            report_every=args.report_every,
            workers=args.workers,
            emit_open_runs=args.emit_open_runs,
            logger=logger,
        )
    except InvalidParameterError as e:
        print(f"[ERROR] {e}")
        return 2

    task.add_observer(logging_observer(logger))
    thread = task.start()
    try:
        while thread.is_alive():
            thread.join(0.5)
    except KeyboardInterrupt:
        logger.warning("Interrupted, cancelling...")
        task.cancel()
        thread.join()

    result = task.result
    if result is None:
        return 1
    print(result.message)
    return EXIT_CODES[result.status]


def show_chromosomes(bams: list[str], log_level: str = "WARNING") -> int:
    logger = _make_logger(log_level)
    rc = 0
    for bam in bams:
        chromosomes = read_chromosomes(bam, logger=logger)
        print(f"== {bam} ==")
        if not chromosomes:
            print("[info] No chromosomes declared in header.")
            rc = 1
            continue
        for chrom in chromosomes:
            print(f"{chrom.name}\t{chrom.length}")
        print(f"total\t{genome_length(chromosomes)}")
    return rc


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mistpy",
        description="Find exonic regions of insufficient sequencing coverage (MIST regions)."
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser(
        "run",
        aliases=["mist"],
        help="Scan every annotated exon of a BAM and write MIST regions to a .mist file."
    )
    r.add_argument(
        "bam",
        help="Input BAM file (must be indexed for samtools mpileup -r)."
    )
    r.add_argument(
        "--out",
        required=True,
        help="Output path; '.mist' is appended when missing."
    )
    # Validated by MistTask so the offending field can be reported by name
    r.add_argument(
        "-t", "--threshold",
        required=True,
        help="Depth threshold; positions with depth below it are insufficient."
    )
    r.add_argument(
        "-l", "--length",
        required=True,
        help="Minimum length of a reported region."
    )
    r.add_argument(
        "--annotation",
        default=None,
        help="Exon table (.tsv or .tsv.gz). Defaults to the bundled Ensembl v75 protein-coding exons."
    )
    r.add_argument(
        "--samtools",
        default="samtools",
        help="samtools executable used as coverage source (default: samtools)."
    )
    r.add_argument(
        "--pad",
        type=int,
        default=WINDOW_SIZE,
        help=f"Bases scanned on each side of an exon (default {WINDOW_SIZE})."
    )
    r.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Threads writing coverage records into the depth array (default 1)."
    )
    r.add_argument(
        "--report-every",
        type=int,
        default=DEFAULT_REPORT_EVERY,
        help=f"Coverage records between progress reports (default {DEFAULT_REPORT_EVERY:,})."
    )
    r.add_argument(
        "--emit-open-runs",
        action="store_true",
        help="Also report low-coverage runs that reach the end of the scanned window."
    )
    r.add_argument(
        "--log-level",
        default="INFO",
        choices=["ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO)."
    )

    c = sub.add_parser(
        "chroms",
        aliases=["header"],
        help="Print chromosome names and lengths declared in BAM headers (bamnostic-based)."
    )
    c.add_argument(
        "bams",
        nargs="+",
        help="One or more BAM files."
    )
    c.add_argument(
        "--log-level",
        default="WARNING",
        choices=["ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: WARNING)."
    )
    return p


if __name__ == "__main__":
    raise SystemExit(main())
