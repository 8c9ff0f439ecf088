"""CLI entry point: run the digest, mint support links, prune the nonce ledger."""

import argparse
import dataclasses
import datetime
import json
import logging
import sys
import time
from urllib.parse import urlencode

from dotenv import load_dotenv

from newsletter.config import Settings
from newsletter.tokens import SecretRotation, TokenMinter

load_dotenv()  # reads .env file from project root


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Newsletter digest dispatcher")
    parser.add_argument(
        "--run-digests", action="store_true",
        help="Send digests to every subscriber due right now",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="With --run-digests: report who would be sent to, send nothing",
    )
    parser.add_argument(
        "--window", type=int, default=15,
        help="Send-window tolerance in minutes (1-60, default 15)",
    )
    parser.add_argument(
        "--mint-token", metavar="USER_ID",
        help="Print a fresh manage-preferences link for this user id",
    )
    parser.add_argument(
        "--email",
        help="Like --mint-token but look the user up by email address",
    )
    parser.add_argument("--days", type=int, default=7, help="Minted link lifetime in days")
    parser.add_argument("--hours", type=int, default=0, help="Extra link lifetime in hours")
    parser.add_argument(
        "--alt", action="store_true",
        help="Sign with UNSUBSCRIBE_SECRET_ALT (secret rotation)",
    )
    parser.add_argument(
        "--prune-nonces", metavar="DAYS", type=int,
        help="Delete used nonces older than DAYS (must exceed the token lifetime)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    log = logging.getLogger(__name__)

    settings = Settings.from_env()
    if args.alt:
        settings = dataclasses.replace(settings, sign_with_alt=True)

    if not (args.run_digests or args.mint_token or args.email or args.prune_nonces is not None):
        parser.print_help()
        return 1

    from newsletter.db import Database
    database = Database(settings)

    if args.mint_token or args.email:
        user_id = args.mint_token
        if not user_id:
            user_id = database.find_user_id(args.email)
            if not user_id:
                log.error("No user with email %s", args.email)
                return 1
        ttl = args.days * 24 * 3600 + args.hours * 3600
        minter = TokenMinter(SecretRotation.from_settings(settings), ttl)
        token = minter.mint(user_id)
        print(f"{settings.base_url}/manage?{urlencode({'token': token})}")
        log.info(
            "Minted link for %s, expires %s", user_id,
            datetime.datetime.fromtimestamp(int(time.time()) + ttl, datetime.timezone.utc).isoformat(),
        )

    if args.prune_nonces is not None:
        if args.prune_nonces * 24 * 3600 <= settings.token_ttl_seconds:
            log.error("Refusing to prune: %d days does not exceed the token lifetime", args.prune_nonces)
            return 1
        cutoff = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=args.prune_nonces)
        database.prune_nonces(cutoff)

    if args.run_digests:
        from newsletter.email_sender import Mailer
        from newsletter.errors import DigestRunError
        from newsletter.scheduler import DigestScheduler
        from newsletter.send_window import clamp_tolerance

        minter = TokenMinter(SecretRotation.from_settings(settings), settings.token_ttl_seconds)
        scheduler = DigestScheduler(settings, database, Mailer(settings), minter)
        try:
            report = scheduler.run(tolerance_minutes=clamp_tolerance(args.window), dry_run=args.dry_run)
        except DigestRunError as exc:
            log.error("Digest run aborted: %s", exc)
            return 1
        print(json.dumps(report.to_dict(), indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(main())
