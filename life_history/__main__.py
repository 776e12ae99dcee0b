"""
Clutch-size Trajectory CLI
==========================

Command-line interface for the clutch-size age trajectory pipeline.

Usage:
    python -m life_history --input data/breeding_records.csv
    python -m life_history --config run.json
    python -m life_history --input records.tsv --sep "\\t" --no-gate
    python -m life_history --input records.csv --invalidate-cache --quiet
"""

import argparse
import sys

from .config import PipelineConfig
from .errors import AnalysisError
from .pipeline import run_pipeline


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Clutch-size age trajectory: additive mixed model + breakpoint analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python -m life_history --input data/breeding_records.csv
    python -m life_history --input data/breeding_records.csv --k-age 6 --k-date 8
    python -m life_history --config run.json --output-dir outputs/run2
    python -m life_history --input data/breeding_records.csv --no-cache
        """
    )

    parser.add_argument('--input', '-i', type=str, default=None, help='Breeding record table (delimited text with header)')
    parser.add_argument('--sep', type=str, default=None, help='Field delimiter (sniffed when omitted)')
    parser.add_argument('--config', '-c', type=str, default=None, help='JSON file with PipelineConfig fields')
    parser.add_argument('--output-dir', '-o', type=str, default=None, help='Directory for CSV outputs')
    parser.add_argument('--cache-dir', type=str, default=None, help='Model cache directory')
    parser.add_argument('--no-cache', action='store_true', help='Fit without reading or writing the model cache')
    parser.add_argument('--invalidate-cache', action='store_true', help='Drop the cached model for this data/specification before fitting')
    parser.add_argument('--k-age', type=int, default=None, help='Basis dimension of the age smooth')
    parser.add_argument('--k-date', type=int, default=None, help='Basis dimension of the laying-date smooth')
    parser.add_argument('--family', choices=['auto', 'negative_binomial', 'quasi_poisson', 'poisson'], default=None, help='Response family (default: auto, from the Pearson dispersion)')
    parser.add_argument('--davies-k', type=int, default=None, help='Evaluation points for the Davies test (default: n_ages - 2)')
    parser.add_argument('--alpha', type=float, default=None, help='Significance level for the breakpoint gate')
    parser.add_argument('--no-gate', action='store_true', help='Fit the segmented model even when the Davies test is not significant')
    parser.add_argument('--n-boot', type=int, default=None, help='Bootstrap restarts of the segmented fit')
    parser.add_argument('--seed', type=int, default=None, help='Random seed')
    parser.add_argument('--quiet', '-q', action='store_true', help='Suppress verbose output')

    args = parser.parse_args(argv)

    overrides = {
        'input_path': args.input,
        'sep': "\t" if args.sep == "\\t" else args.sep,
        'output_dir': args.output_dir,
        'cache_dir': args.cache_dir,
        'k_age': args.k_age,
        'k_date': args.k_date,
        'family': args.family,
        'davies_k': args.davies_k,
        'alpha': args.alpha,
        'n_boot': args.n_boot,
        'seed': args.seed,
    }
    if args.no_gate:
        overrides['require_significant_break'] = False
    if args.quiet:
        overrides['verbose'] = False

    try:
        if args.config:
            config = PipelineConfig.from_json(args.config, **overrides)
        else:
            config = PipelineConfig(**{k: v for k, v in overrides.items() if v is not None})
        if args.no_cache:
            config.cache_dir = None
        if config.input_path is None:
            parser.error("--input is required (or set input_path in --config)")
        run_pipeline(config, invalidate_cache=args.invalidate_cache)
    except (AnalysisError, FileNotFoundError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
