#!/usr/bin/env python3
"""
oci-sysext command-line interface
Builds systemd-sysext images out of OCI container images
"""

import sys
import argparse
import logging

from .config import load_config
from .errors import SysextError
from .image_store import ImageStore
from .layer_diff import STRATEGIES
from .packager import SUPPORTED_FS
from .sysext import SysextBuilder
from .tools import CommandRunner, OperationsLog

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


def create_parser():
    """Create command-line parser"""
    parser = argparse.ArgumentParser(
        prog='oci-sysext',
        description='Create systemd-sysext images from OCI container images',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Pull image
  %(prog)s pull docker.io/library/alpine:latest

  # Load image from local docker save archive
  %(prog)s load -i alpine.tar

  # Create an ext4 sysext from an image
  %(prog)s create --image docker.io/library/alpine:latest --name alpine

  # Create a squashfs sysext with only the layers not present in a base image
  %(prog)s create --image myapp:latest --image-source debian:bookworm --name myapp --fs squashfs

  # Leave out the first two layers explicitly
  %(prog)s create --image myapp:latest --skip-layers 2 --name myapp
        """
    )

    parser.add_argument('--home', help='Data directory (default: $OCI_SYSEXT_HOME, $XDG_DATA_HOME or ~/.local/share)')
    parser.add_argument('--config', help='Path to YAML configuration file')
    parser.add_argument('--log-level', choices=sorted(LOG_LEVELS), help='Log messages above specified level')
    parser.add_argument('--verbose', action='store_true', help='Show verbose logs')

    subparsers = parser.add_subparsers(dest='subcommand', help='Available commands', required=True)

    # create command
    sysext_parser = subparsers.add_parser('create', help='Create a sysext raw image from an OCI image')
    sysext_parser.add_argument('--image', help='OCI image to use')
    sysext_parser.add_argument('--name', help='Name of sysext')
    sysext_parser.add_argument('--fs', choices=SUPPORTED_FS, help='Filesystem to use for raw image (default: ext4)')
    source_group = sysext_parser.add_mutually_exclusive_group()
    source_group.add_argument('--image-source', help='Source image to diff-out of the specified image')
    source_group.add_argument('--skip-layers', type=int, help='Number of leading layers to leave out')
    sysext_parser.add_argument('--diff-strategy', choices=STRATEGIES, help='How shared layers are detected (default: digest)')
    sysext_parser.add_argument('--no-relocate', action='store_true', help='Do not patch binaries or copy shared libraries')
    sysext_parser.set_defaults(subparser=sysext_parser)

    # pull command
    pull_parser = subparsers.add_parser('pull', help='Pull image')
    pull_parser.add_argument('image', help='Image reference')
    pull_parser.add_argument('--force', action='store_true', help='Force re-download')

    # load command
    load_parser = subparsers.add_parser('load', help='Load image from docker save archive')
    load_parser.add_argument('-i', '--input', required=True, help='Input tar file path')
    load_parser.add_argument('--image', help='Reference to store the image under (default: first RepoTag)')

    return parser


def cmd_create(args, config):
    if not args.image or not args.name:
        args.subparser.print_help()
        args.subparser.exit(2, "\nerror: --image and --name are required\n")
    builder = SysextBuilder(config)
    builder.create(
        args.image,
        args.name,
        fs=args.fs,
        image_source=args.image_source,
        skip_layers=args.skip_layers,
        diff_strategy=args.diff_strategy,
        relocate=False if args.no_relocate else None,
    )


def cmd_pull(args, config):
    store = ImageStore(config.images_dir, runner=CommandRunner(OperationsLog(config.operations_log_path)))
    path = store.pull(args.image, force=args.force)
    logger.info(f"Image available at: {path}")


def cmd_load(args, config):
    store = ImageStore(config.images_dir)
    logger.info(f"Loading image from tar file: {args.input}")
    store.load_archive(args.input, image=args.image)


def main(argv=None):
    """Main function"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.log_level:
        logging.getLogger().setLevel(LOG_LEVELS[args.log_level])

    try:
        config = load_config(args.config, home=args.home)
        if args.subcommand == 'create':
            cmd_create(args, config)
        elif args.subcommand == 'pull':
            cmd_pull(args, config)
        elif args.subcommand == 'load':
            cmd_load(args, config)
    except KeyboardInterrupt:
        logger.info("User interrupted")
        sys.exit(130)
    except SysextError as e:
        logger.error(f"Execution failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
