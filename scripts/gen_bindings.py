#!/usr/bin/env python3
"""
gen_bindings.py - binding generator entry point

Generates bindings for a compiled library from its JSON manifest.

Usage:
    python scripts/gen_bindings.py MANIFEST OUTPUT [--lang LANG] [--prefix PREFIX] [--format]
"""

import argparse
import os
import sys

from manifest_bindgen import BACKENDS, BindgenError, Config, ConfigError, Generator, Manifest
from manifest_bindgen import get_backend, lang_for_path
from manifest_bindgen.generator import DEFAULT_PREFIX


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Generate bindings from a library manifest')
    parser.add_argument('manifest', help='Path to the JSON manifest')
    parser.add_argument('output', help='Path of the primary generated file')
    parser.add_argument('--lang', choices=sorted(BACKENDS), default=None,
                        help='Target language (default: inferred from the output suffix)')
    parser.add_argument('--prefix', default=DEFAULT_PREFIX,
                        help='Native symbol prefix')
    parser.add_argument('--format', dest='run_formatter', action='store_true',
                        help='Run the target language formatter on the output')
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_argument_parser().parse_args(argv)


def build_config(argv: list[str] | None = None) -> Config:
    """Parse and validate the command line"""
    args = parse_args(argv)

    if not os.path.isfile(args.manifest):
        raise ConfigError(
            f'manifest not found: {args.manifest}',
            'pass the JSON manifest produced alongside the compiled library',
        )

    lang = args.lang or lang_for_path(args.output)
    if lang is None:
        raise ConfigError(
            f'cannot infer the target language from {args.output}',
            f'use a .ml, .rs or .py output or pass --lang {{{",".join(sorted(BACKENDS))}}}',
        )

    if not args.prefix.isidentifier():
        raise ConfigError(f'invalid symbol prefix {args.prefix!r}')

    return Config(
        manifest_path=args.manifest,
        output_path=args.output,
        lang=lang,
        prefix=args.prefix,
        run_formatter=args.run_formatter,
    )


def run(config: Config) -> list[str]:
    manifest = Manifest.load(config.manifest_path)
    generator = Generator(get_backend(config.lang, config.prefix))
    return generator.write(
        manifest,
        config.output_path,
        source=config.manifest_path,
        run_formatter=config.run_formatter,
    )


def main(argv: list[str] | None = None) -> int:
    try:
        run(build_config(argv))
    except BindgenError as err:
        print(f'error: {err}', file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
