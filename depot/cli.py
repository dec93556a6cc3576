"""
Command Line Interface for the image ingestion pipeline.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from .config import DepotConfig
from .context import DepotContext
from .exceptions import DepotError
from .ledger import format_bytes


def setup_logging(verbose: bool, level: str = 'INFO') -> logging.Logger:
    """Configure logging."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logging.getLogger('sh').setLevel(logging.WARNING)
    logging.getLogger('mysql.connector').setLevel(logging.WARNING)

    return logging.getLogger('depot')


def get_config(args: argparse.Namespace) -> DepotConfig:
    """Get configuration from environment and CLI overrides."""
    config = DepotConfig.from_env()

    if getattr(args, 'concurrency', None):
        config.worker_concurrency = args.concurrency
    if getattr(args, 'rate_limit', None):
        config.rate_limit_max = args.rate_limit
    if getattr(args, 'convert_timeout', None):
        config.convert_timeout = args.convert_timeout

    return config


def build_context(args: argparse.Namespace, logger: logging.Logger) -> DepotContext:
    """
    Build the process's components.

    Raises:
        ValueError: if the configuration is invalid
    """
    config = get_config(args)
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(error)
        raise ValueError("Configuration invalid")
    return DepotContext.build(config, logger=logger)


def print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def parse_metadata_pairs(items: Optional[List[str]]) -> List[dict]:
    """Parse LABEL=VALUE arguments into label/value pairs."""
    pairs = []
    for item in items or []:
        label, sep, value = item.partition('=')
        if not sep or not label.strip() or not value.strip():
            raise ValueError(f"Metadata must look like LABEL=VALUE: {item}")
        pairs.append({'label': label.strip(), 'value': value.strip()})
    return pairs


def cmd_init_db(ctx: DepotContext, args: argparse.Namespace) -> int:
    """Create database tables."""
    ctx.store.create_tables()
    ctx.logger.info("Database ready")
    return 0


def cmd_create_user(ctx: DepotContext, args: argparse.Namespace) -> int:
    quota = args.quota_mb * 1024 * 1024 if args.quota_mb is not None else None
    user = ctx.service.create_user(args.email, args.name, quota)
    print(user.id)
    return 0


def cmd_create_resource(ctx: DepotContext, args: argparse.Namespace) -> int:
    resource = ctx.service.create_resource(
        args.user_id,
        args.title,
        visibility='private' if args.private else 'public',
        description=args.description,
        attribution=args.attribution,
        license=args.license,
        homepage=args.homepage,
        viewing_direction=args.viewing_direction,
        metadata=parse_metadata_pairs(args.metadata),
    )
    print(resource.id)
    return 0


def cmd_add_image(ctx: DepotContext, args: argparse.Namespace) -> int:
    for path in args.paths:
        if not os.path.isfile(path):
            ctx.logger.error(f"File not found: {path}")
            return 1
    for path in args.paths:
        image = ctx.service.add_image(args.resource_id, os.path.abspath(path))
        print(image.id)
    if args.submit:
        ctx.service.submit(args.resource_id)
    return 0


def cmd_submit(ctx: DepotContext, args: argparse.Namespace) -> int:
    for job_id in ctx.service.submit(args.resource_id, include_failed=args.include_failed):
        print(job_id)
    return 0


def cmd_dispatch(ctx: DepotContext, args: argparse.Namespace) -> int:
    print(ctx.service.dispatch_image(args.image_id))
    return 0


def cmd_worker(ctx: DepotContext, args: argparse.Namespace) -> int:
    """Run the worker pool until interrupted."""
    config = ctx.config
    ctx.logger.info(f"Concurrency: {config.worker_concurrency}")
    ctx.logger.info(f"Rate limit: {config.rate_limit_max} per {config.rate_limit_window:g}s")
    ctx.logger.info(f"Convert timeout: {config.convert_timeout:g}s")

    pool = ctx.create_pool()
    try:
        stats = pool.run(until_empty=args.once)
    except KeyboardInterrupt:
        ctx.logger.info("Interrupted by user")
        return 130

    if not args.quiet:
        print()
        print(f"Converted: {stats.succeeded}")
        print(f"Retried: {stats.retried}")
        print(f"Failed: {stats.exhausted}")
        print(f"Time: {stats.elapsed_seconds:.1f}s")
        print(f"Rate: {stats.rate_per_minute:.1f}/min")
    return 0


def cmd_status(ctx: DepotContext, args: argparse.Namespace) -> int:
    print_json(ctx.service.get_status(args.resource_id))
    return 0


def cmd_manifest(ctx: DepotContext, args: argparse.Namespace) -> int:
    manifest = ctx.service.get_manifest(args.resource_id, viewer_id=args.user)
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as f:
            json.dump(manifest, f, indent=2, ensure_ascii=False)
        ctx.logger.info(f"Manifest written to {args.output}")
    else:
        print_json(manifest)
    return 0


def cmd_usage(ctx: DepotContext, args: argparse.Namespace) -> int:
    usage = ctx.ledger.usage(args.user_id)
    if usage is None:
        ctx.logger.error(f"Unknown user: {args.user_id}")
        return 1
    print(f"Used:      {format_bytes(usage.used)} ({usage.percent_used:.1f}%)")
    print(f"Quota:     {format_bytes(usage.quota)}")
    print(f"Remaining: {format_bytes(usage.remaining)}")
    warning = ctx.ledger.usage_warning(args.user_id)
    if warning:
        print(f"Warning: over {warning}% of quota used")
    return 0


def cmd_delete(ctx: DepotContext, args: argparse.Namespace) -> int:
    released = ctx.service.delete_resource(args.resource_id)
    print(f"Released {format_bytes(released)}")
    return 0


COMMANDS = {
    'init-db': cmd_init_db,
    'create-user': cmd_create_user,
    'create-resource': cmd_create_resource,
    'add-image': cmd_add_image,
    'submit': cmd_submit,
    'dispatch': cmd_dispatch,
    'worker': cmd_worker,
    'status': cmd_status,
    'manifest': cmd_manifest,
    'usage': cmd_usage,
    'delete': cmd_delete,
}


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog='depot',
        description='IIIF image ingestion pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Typical workflow:
  1. Setup:    python -m depot init-db
  2. Upload:   python -m depot add-image RESOURCE_ID scan1.jpg scan2.jpg --submit
  3. Convert:  python -m depot worker
  4. Publish:  python -m depot manifest RESOURCE_ID

Configuration is read from the environment (DB_HOST, OUTPUT_DIR, ...).
"""
    )

    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    subparsers.add_parser('init-db', help='Create database tables')

    user_parser = subparsers.add_parser('create-user', help='Create a user')
    user_parser.add_argument('email')
    user_parser.add_argument('name')
    user_parser.add_argument('--quota-mb', type=int, help='Override DEFAULT_QUOTA_MB')

    res_parser = subparsers.add_parser('create-resource', help='Create an empty resource')
    res_parser.add_argument('user_id')
    res_parser.add_argument('title')
    res_parser.add_argument('--private', action='store_true', help='Only the owner may read the manifest')
    res_parser.add_argument('--description')
    res_parser.add_argument('--attribution')
    res_parser.add_argument('--license', help='Rights URL')
    res_parser.add_argument('--homepage')
    res_parser.add_argument('--viewing-direction', default='left-to-right')
    res_parser.add_argument('--metadata', action='append', metavar='LABEL=VALUE',
                            help='Custom metadata pair (repeatable)')

    add_parser = subparsers.add_parser('add-image', help='Register uploaded files with a resource')
    add_parser.add_argument('resource_id')
    add_parser.add_argument('paths', nargs='+', metavar='PATH')
    add_parser.add_argument('--submit', action='store_true', help='Dispatch the images right away')

    submit_parser = subparsers.add_parser('submit', help='Dispatch uploaded images of a resource')
    submit_parser.add_argument('resource_id')
    submit_parser.add_argument('--include-failed', action='store_true',
                               help='Also re-dispatch failed images')

    dispatch_parser = subparsers.add_parser('dispatch', help='Dispatch one image')
    dispatch_parser.add_argument('image_id')

    worker_parser = subparsers.add_parser('worker', help='Run the conversion worker pool')
    worker_parser.add_argument('-c', '--concurrency', type=int, help='Override WORKER_CONCURRENCY')
    worker_parser.add_argument('-r', '--rate-limit', type=int, help='Override RATE_LIMIT_MAX')
    worker_parser.add_argument('-t', '--convert-timeout', type=float, help='Override CONVERT_TIMEOUT')
    worker_parser.add_argument('--once', action='store_true', help='Exit when the queue has nothing ready')
    worker_parser.add_argument('-q', '--quiet', action='store_true', help='Suppress summary output')

    status_parser = subparsers.add_parser('status', help='Show processing status of a resource')
    status_parser.add_argument('resource_id')

    manifest_parser = subparsers.add_parser('manifest', help='Print the IIIF manifest of a resource')
    manifest_parser.add_argument('resource_id')
    manifest_parser.add_argument('--user', help='Viewer user id (needed for private resources)')
    manifest_parser.add_argument('-o', '--output', help='Write to file instead of stdout')

    usage_parser = subparsers.add_parser('usage', help='Show storage usage of a user')
    usage_parser.add_argument('user_id')

    delete_parser = subparsers.add_parser('delete', help='Delete a resource and release its storage')
    delete_parser.add_argument('resource_id')

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    logger = setup_logging(parsed_args.verbose, os.getenv('LOG_LEVEL', 'INFO'))

    try:
        ctx = build_context(parsed_args, logger)
    except ValueError:
        return 1

    try:
        return COMMANDS[parsed_args.command](ctx, parsed_args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (DepotError, ValueError) as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception(f"Command failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
