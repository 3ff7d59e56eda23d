"""Query and control the thumbcache daemon from the command line."""

import argparse
import json
import os
import sys

from config.config_manager import ConfigManager
from network.socket_client import CacheSocketClient

__completions__ = ["status", "status-batch", "hashes", "rebuild", "generate", "cleanup", "clear-history",
                   "cache-status", "scan", "history", "config", "config-set", "--socket", "--json"]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cachectl", description="thumbcache daemon control.")
    parser.add_argument('--socket', default=None, help='Daemon socket path (default: from config).')
    parser.add_argument('--json', action='store_true', help='Print raw JSON responses.')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('status', help='Cache status of one folder ("" for the gallery root).')
    p.add_argument('folder', nargs='?', default='')
    p.add_argument('--thumbnails', action='store_true', help='Also count images with a thumbnail on disk.')
    p = sub.add_parser('status-batch', help='Cache status of several folders.')
    p.add_argument('folders', nargs='+')
    sub.add_parser('hashes', help='All stored folder hash records with summary stats.')
    p = sub.add_parser('rebuild', help="Regenerate one folder's thumbnails.")
    p.add_argument('folder', nargs='?', default='')
    p = sub.add_parser('generate', help="Regenerate one image's thumbnails (gallery-relative path).")
    p.add_argument('image')
    p = sub.add_parser('cleanup', help='Drop history older than the retention window.')
    p.add_argument('--hours', type=float, default=None, help='Retention window in hours.')
    sub.add_parser('clear-history', help='Drop all history and change records.')
    sub.add_parser('cache-status', help='Scheduler, record and thumbnail summary.')
    sub.add_parser('scan', help='Run a full scan now.')
    p = sub.add_parser('history', help='Recent history and change records.')
    p.add_argument('--limit', type=int, default=20)
    sub.add_parser('config', help='Show the scheduler and thumbnail settings.')
    p = sub.add_parser('config-set', help='Merge-update settings, e.g. --scheduler \'{"enabled": false}\'.')
    p.add_argument('--scheduler', type=json.loads, default=None, help='JSON object merged into scheduler.')
    p.add_argument('--thumbnails', type=json.loads, default=None, help='JSON object merged into thumbnails.')
    return parser


def _call(client: CacheSocketClient, args):
    if args.command == 'status':
        return client.folder_status(args.folder, include_thumbnails=args.thumbnails)
    if args.command == 'status-batch':
        return client.folder_status_batch(args.folders)
    if args.command == 'hashes':
        return client.folder_hashes()
    if args.command == 'rebuild':
        return client.rebuild_folder(args.folder)
    if args.command == 'generate':
        return client.generate_single(args.image)
    if args.command == 'cleanup':
        return client.cleanup_history(args.hours)
    if args.command == 'clear-history':
        return client.clear_history()
    if args.command == 'cache-status':
        return client.cache_status()
    if args.command == 'scan':
        return client.trigger_scan()
    if args.command == 'history':
        return client.history(args.limit)
    if args.command == 'config':
        return client.get_config()
    if args.command == 'config-set':
        return client.update_config(scheduler=args.scheduler, thumbnails=args.thumbnails)
    raise ValueError(f"Unknown command: {args.command}")


def _print_human(command: str, data: dict):
    if command == 'status':
        folder = data.get('folder') or {}
        state = "current" if folder.get('is_current') else "stale"
        print(f"{folder.get('folder_path') or '/'}: {state} ({folder.get('thumbnail_count', 0)} thumbnails)")
        summary = (data.get('thumbnails') or {}).get('summary')
        if summary:
            print(f"  on disk: {summary['cached']}/{summary['total']} images ({summary['percentage']}%)")
    elif command == 'status-batch':
        for path, entry in data.get('by_folder', {}).items():
            if 'error' in entry:
                print(f"{path or '/'}: error {entry['error'].get('kind')}: {entry['error'].get('message')}")
            else:
                print(f"{path or '/'}: {'current' if entry.get('is_current') else 'stale'}")
    elif command == 'hashes':
        stats = data.get('stats', {})
        print(f"{stats.get('total', 0)} folders: {stats.get('matching', 0)} current, "
              f"{stats.get('changed', 0)} changed, {stats.get('new_folders', 0)} never built")
    elif command == 'rebuild':
        print(f"{data.get('folder_path') or '/'}: {data.get('thumbnails_generated', 0)}/"
              f"{data.get('files_processed', 0)} images in {data.get('duration', 0.0):.2f}s")
    elif command == 'generate':
        print(f"{data.get('image_path')}: {len(data.get('thumbnails', {}))} sizes written")
    elif command in ('cleanup', 'clear-history'):
        if data.get('cleared'):
            print("History cleared.")
        else:
            print(f"Removed {data.get('history_removed', 0)} history entries, "
                  f"{data.get('changes_removed', 0)} change records.")
    elif command == 'history':
        for entry in data.get('history', []):
            print(f"{entry['timestamp']:.0f} {entry['event_type']:8s} {entry['folder_path'] or '/'}  {entry['detail']}")
    else:
        print(json.dumps(data, indent=2))


def main(argv=None):
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == 'config-set' and args.scheduler is None and args.thumbnails is None:
        parser.error("config-set needs --scheduler and/or --thumbnails")
    socket_path = args.socket or os.path.expanduser(ConfigManager().get("system.socket_path"))

    client = CacheSocketClient(socket_path)
    try:
        response = _call(client, args)
    finally:
        client.close()

    if response is None:
        print(f"thumbcache daemon not reachable at {socket_path}", file=sys.stderr)
        return 2
    data = response.model_dump()
    if response.status == "error":
        print(f"error ({data.get('error_kind')}): {data.get('message')}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        _print_human(args.command, data)
    return 0


if __name__ == "__main__":
    sys.exit(main())
