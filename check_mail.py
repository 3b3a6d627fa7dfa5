#!/usr/bin/env python3
"""
check_mail.py — Check the outbound mail configuration used for OTP delivery.

Resolves the channel exactly like the server does, verifies the SMTP
connection (login only) when SMTP is selected, then sends one test message.

Exit codes:
- 0: test message sent
- 1: connection check or send failed
- 2: no outbound channel configured
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional

from canvass_auth.channels import DeliveryError, SmtpChannel, resolve_channel
from canvass_auth.config import Settings, get_settings

TEST_SUBJECT = "Test email from the canvass OTP server"
TEST_BODY = "If you see this, your mail configuration is correct!"


async def run_check(settings: Settings, to: Optional[str]) -> int:
    channel = resolve_channel(settings)
    print(f"channel={channel.name}")
    print(f"FROM_EMAIL={settings.FROM_EMAIL or '-'}")

    if not channel.delivers:
        print("No outbound channel configured. OTP codes would be returned in API responses.", file=sys.stderr)
        return 2

    recipient = to or settings.ADMIN_EMAIL
    try:
        if isinstance(channel, SmtpChannel):
            print(f"Verifying SMTP connection to {settings.SMTP_HOST}:{settings.SMTP_PORT} ...")
            await channel.check()
            print("Connection verified.")

        print(f"Sending test email to {recipient} ...")
        await channel.send(recipient, TEST_SUBJECT, TEST_BODY)
    except DeliveryError as e:
        print(f"FAILED: {e.detail}", file=sys.stderr)
        return 1

    print("Test email sent.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Send a test message through the configured OTP mail channel.")
    p.add_argument("--to", default=None, help="Recipient (default: ADMIN_EMAIL)")
    args = p.parse_args(argv)
    return asyncio.run(run_check(get_settings(), args.to))


if __name__ == "__main__":
    raise SystemExit(main())
