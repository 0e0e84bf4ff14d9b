# fantasy_app/scripts/close_gameweek.py
"""Roll all users' transfer state into the next gameweek.

Run once per deadline from an external scheduler (cron, Render cron job):

    python -m fantasy_app.scripts.close_gameweek --gameweek 7

Safe to re-run: users already rolled over are skipped.
"""
import argparse
import sys

from fantasy_app.transfer_service import close_gameweek


def main(argv=None):
    parser = argparse.ArgumentParser(description="Close a gameweek and roll transfer state over")
    parser.add_argument("--gameweek", "-g", type=int, required=True, help="gameweek whose deadline has passed")
    parser.add_argument("--user", "-u", action="append", dest="users", help="limit to these user ids")
    args = parser.parse_args(argv)

    report = close_gameweek(args.gameweek, user_ids=args.users)
    for user_id, status in sorted(report.items()):
        print(f"[rollover] {user_id}: {status}")
    return 1 if any(status == "missing" for status in report.values()) else 0


if __name__ == "__main__":
    sys.exit(main())
