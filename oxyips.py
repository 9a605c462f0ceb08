#!/usr/bin/env python3
"""
OxyIPS is a tool that applies an IPS patch to a ROM file, and writes the patched ROM to a new file.
"""
import argparse
import logging
import os
import platform
import sys

import ips

__version__ = '1.0.0'

PROGRAM_NAME = 'OxyIPS'
AUTHOR = 'Wew-Laddie'
USAGE = 'Usage: oxyips [patch] [rom] [output]'

windows = platform.system() == 'Windows'


class _CustomFormatter(logging.Formatter):
    yellow = '\x1b[0;33m' if not windows else ''
    bold_red = '\x1b[1;91m' if not windows else ''
    bold_fucsia = '\x1b[1;95m' if not windows else ''
    reset = '\x1b[0m' if not windows else ''

    def __init__(self):
        super().__init__()

        fmt = '%(asctime)s %(levelname)-8s %(name)-6s %(message)s'
        datefmt = '%Y-%m-%d %H:%M:%S'
        self.__formatters = {
            logging.DEBUG: logging.Formatter(fmt, datefmt),
            logging.INFO: logging.Formatter(fmt, datefmt),
            logging.WARNING: logging.Formatter(self.yellow + fmt + self.reset, datefmt),
            logging.ERROR: logging.Formatter(self.bold_red + fmt + self.reset, datefmt),
            logging.CRITICAL: logging.Formatter(self.bold_fucsia + fmt + self.reset, datefmt),
        }

    def format(self, record):
        return self.__formatters[record.levelno].format(record)


log = logging.getLogger('oxyips')


class OxyIPSError(Exception):
    exit_code = 1


class MissingFileError(OxyIPSError):
    exit_code = 3


class FileAccessError(OxyIPSError):
    exit_code = 4


OPTIONAL_ARGUMENTS = {
    'General Options': (
        (
            'Gap Policy',
            ('choices', [policy.value for policy in ips.GapPolicy], ips.GapPolicy.PAD.value),
            'Determines how records that start past the end of the ROM are applied.\n\n'
            '`pad` (default) fills the gap with zeros, and writes the record at its offset. '
            '`append` writes the record at the current end of the ROM, as the original tool did. '
            '`error` rejects the patch.',
        ),
        (
            'Verbose',
            bool,
            'If specified, every record in the patch will be listed as it is applied: position in '
            'the patch file, offset in the ROM, record type, and number of bytes written.',
        ),
    ),
}


def option_label_as_argument_name(option_label: str) -> str:
    return f'--{option_label.lower().replace(" ", "-")}'


def setup_logging(verbose: bool = False):
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(_CustomFormatter())

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        handlers=(console_handler, ))


def create_args_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='oxyips', description=__doc__)
    parser.add_argument('patch', type=str, help='Path to the IPS patch file.')
    parser.add_argument('rom', type=str, help='Path to the ROM file that is to be patched.')
    parser.add_argument('output', type=str, help='Path where the patched ROM file will be written.')
    parser.add_argument('--version',
                        action='version',
                        version=f'{PROGRAM_NAME} {__version__}')

    for group_name, group_options in OPTIONAL_ARGUMENTS.items():
        argument_group = parser.add_argument_group(group_name)
        for option_label, option_type, option_help in group_options:
            option_as_argument = option_label_as_argument_name(option_label)

            if option_type is bool:
                argument_group.add_argument(option_as_argument,
                                            action='store_true',
                                            help=option_help)

            if isinstance(option_type, tuple):
                option_type, *rest = option_type

                if option_type == 'choices':
                    option_values, default_value = rest
                    argument_group.add_argument(option_as_argument,
                                                type=type(default_value),
                                                default=default_value,
                                                choices=option_values,
                                                help=option_help)

    return parser


def read_file(filepath: str, description: str) -> bytes:
    try:
        with open(filepath, 'rb') as f:
            return f.read()
    except OSError as e:
        raise FileAccessError(f'Failed to read {description} "{filepath}": '
                              f'{e.strerror or e}') from e


def patch_rom(args: argparse.Namespace) -> int:
    if not os.path.isfile(args.patch):
        raise MissingFileError(f'IPS patch file "{args.patch}" does not exist.')
    if not os.path.isfile(args.rom):
        raise MissingFileError(f'ROM file "{args.rom}" does not exist.')

    patch_data = read_file(args.patch, 'IPS patch file')
    rom_data = read_file(args.rom, 'ROM file')

    try:
        patched_data, record_count = ips.apply_patch(patch_data, rom_data,
                                                     ips.GapPolicy(args.gap_policy))
    except ips.PatchError as e:
        raise type(e)(f'IPS patch file "{args.patch}" is invalid: {e}') from e

    try:
        ips.write_file_atomically(args.output, patched_data)
    except OSError as e:
        raise FileAccessError(f'Failed to write output file "{args.output}": '
                              f'{e.strerror or e}') from e

    return record_count


def main():
    if len(sys.argv) == 1:
        print(f'{PROGRAM_NAME} {__version__} by {AUTHOR}')
        print(USAGE)
        return

    args = create_args_parser().parse_args()
    setup_logging(args.verbose)

    try:
        record_count = patch_rom(args)
    except (OxyIPSError, ips.PatchError) as e:
        log.error(str(e))
        sys.exit(e.exit_code)
    except Exception as e:
        log.exception(str(e) or 'Unknown error.')
        sys.exit(1)

    print(f'Wrote {record_count} records to {args.output}.')


if __name__ == '__main__':
    main()
