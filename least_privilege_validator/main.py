#!/usr/bin/env python3
# main.py
"""
Least Privilege Validator CLI.

    least-privilege-validator validate formulation.json
    least-privilege-validator synthesize --input formulation.json --config config.json --output-dir payloads/

Reports go to stdout as JSON; diagnostics go to stderr.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from least_privilege_validator import __version__
from least_privilege_validator.formulation_output import (
    FormulationConfigError,
    FormulationOutputError,
    parse_formulation_config,
    parse_formulation_output,
)
from least_privilege_validator.synthesize_payloads import (
    SynthesisError,
    TemplateResolutionError,
    resolve_template_variables,
    synthesize_payloads,
)
from least_privilege_validator.validate_and_fix import validate_and_fix, validate_and_fix_with_fixed
from least_privilege_validator.validation_result import ValidationOutput

logger = logging.getLogger(__name__)

# Constants
EXIT_OK = 0
EXIT_FAILURE = 1


class CommandError(Exception):
    """Raised by a subcommand to stop with an error message."""


def configure_logging() -> None:
    """Log to stderr at the level named by LOG_LEVEL (default INFO)."""
    logging.basicConfig(
        stream=sys.stderr,
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(levelname)s %(message)s",
    )


def read_text(file_path: Path) -> str:
    """
    Read an input file.

    Args:
        file_path: Path to the file

    Returns:
        File contents

    Raises:
        CommandError: If the file is missing or unreadable

    """
    try:
        with file_path.open(encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        msg = f"File not found: {file_path}"
        raise CommandError(msg) from None
    except OSError as e:
        msg = f"Error loading {file_path}: {e}"
        raise CommandError(msg) from e


def write_json(data: dict, output_file: Path) -> None:
    """Write data as indented JSON."""
    try:
        with output_file.open("w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
    except OSError as e:
        msg = f"Error saving {output_file}: {e}"
        raise CommandError(msg) from e
    logger.info("✅ Saved %s", output_file)


def _summary(validation: ValidationOutput) -> str:
    return (
        f"Validation found {validation.total_errors()} error(s) "
        f"and {validation.total_warnings()} warning(s)"
    )


def run_validate(args: argparse.Namespace) -> int:
    """Validate and auto-fix a formulation; print the report."""
    formulation = parse_formulation_output(read_text(Path(args.input_path)))
    validation = validate_and_fix(formulation)

    print(json.dumps(validation.to_dict(), indent=2))

    if not validation.valid:
        logger.warning(_summary(validation))
        return EXIT_FAILURE
    return EXIT_OK


def run_synthesize(args: argparse.Namespace) -> int:
    """Validate and fix a formulation, then synthesize IAM request payloads."""
    formulation = parse_formulation_output(read_text(Path(args.input)))
    validation, fixed = validate_and_fix_with_fixed(formulation)

    if not validation.valid:
        print(json.dumps(validation.to_dict(), indent=2), file=sys.stderr)
        msg = f"Validation failed with {validation.total_errors()} error(s). Cannot synthesize."
        raise CommandError(msg)

    if validation.total_warnings():
        logger.warning(_summary(validation))
        for role in validation.role_results:
            for policy in role.policy_results:
                for violation in policy.violations:
                    logger.warning("⚠️  %s [%s]: %s", policy.policy_name, violation.rule_id, violation.message)

    config = parse_formulation_config(read_text(Path(args.config)))
    resolved = resolve_template_variables(fixed, config)
    synthesis = synthesize_payloads(resolved, config)

    if args.output_dir:
        output_dir = Path(args.output_dir)
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            msg = f"Error creating {output_dir}: {e}"
            raise CommandError(msg) from e
        for role in synthesis["roles"]:
            write_json({"roles": [role]}, output_dir / f"{role['create_role']['RoleName']}.json")
    elif args.output:
        write_json(synthesis, Path(args.output))
    else:
        print(json.dumps(synthesis, indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="least-privilege-validator",
        description="Validate and auto-fix least-privilege IAM policies, then synthesize IAM payloads",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Validate
    p_validate = subparsers.add_parser("validate", help="Validate and auto-fix a formulation output file")
    p_validate.add_argument("input_path", help="Path to formulation output JSON file")
    p_validate.set_defaults(handler=run_validate)

    # Synthesize
    p_synth = subparsers.add_parser("synthesize", help="Transform validated policies into IAM request payloads")
    p_synth.add_argument("--input", required=True, help="Path to formulation output JSON file")
    p_synth.add_argument("--config", required=True, help="Path to formulation configuration JSON file")
    output = p_synth.add_mutually_exclusive_group()
    output.add_argument("--output", help="Path to write the full synthesized JSON output file")
    output.add_argument("--output-dir", help="Directory to write one <RoleName>.json file per role")
    p_synth.set_defaults(handler=run_synthesize)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)
    configure_logging()

    try:
        return args.handler(args)
    except (
        CommandError,
        FormulationOutputError,
        FormulationConfigError,
        TemplateResolutionError,
        SynthesisError,
    ) as e:
        logger.error("❌ %s", e)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
