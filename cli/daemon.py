"""Run the thumbcache daemon in the foreground, optionally replacing a running one."""

import argparse
import logging
import sys

from cli.stop import flock_is_held, pid_file_path, stop_daemon


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="thumbcache-daemon",
                                     description="Serve the thumbnail cache over its Unix socket.")
    parser.add_argument('--restart', action='store_true',
                        help='Stop a running thumbcache daemon first, then take over its socket and pid file.')
    return parser


def main(argv=None):
    args = _build_parser().parse_args(argv)
    if args.restart:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
        pid_path = pid_file_path()
        if not flock_is_held(pid_path):
            logging.info(f"No thumbcache daemon holds {pid_path}; starting a fresh one.")
        elif not stop_daemon():
            logging.error("thumbcache daemon did not stop; not restarting.")
            return 1
        else:
            logging.info("thumbcache daemon stopped; starting its replacement.")

    from thumbcache_daemon import main as _daemon_main
    _daemon_main()
    return 0


if __name__ == "__main__":
    sys.exit(main())
