"""
Interactive setup wizard for the PracticePanther connection.

Prints the PP consent URL, asks for the authorization code PP appends to
the redirect, exchanges it for tokens and stores them in oauth_tokens.
From then on the sync refreshes the token on its own; re-run only when the
refresh token itself has expired (PP: 60 days unused).

Usage:
    python -m exchangesync setup
    python -m exchangesync.scripts.setup   (direct invocation)
"""
import asyncio
import secrets
import sys

from exchangesync.config import get_settings
from exchangesync.db.engine import get_engine
from exchangesync.practicepanther.errors import AuthRequired
from exchangesync.practicepanther.sync_service import build_token_manager


async def _setup(settings) -> int:
    """Run the wizard; returns the process exit code."""
    tokens = build_token_manager(get_engine(), settings)
    try:
        print("\nExchange Sync: PracticePanther Setup\n")

        status = tokens.token_status()
        if status["status"] != "no_token":
            print(f"⚠️  An existing token was found: {status['message']}.")
            overwrite = input("Replace it with a new authorization? [y/N] ").strip().lower()
            if overwrite != "y":
                print("Setup cancelled. Existing token unchanged.")
                return 0

        print("1. Open this URL and approve access:\n")
        print(f"   {tokens.authorization_url(state=secrets.token_urlsafe(16))}\n")
        print("2. PP redirects to the callback URL with ?code=... appended.")
        code = input("   Paste the code value here: ").strip()
        if not code:
            print("Error: code cannot be empty.")
            return 1

        print("\nExchanging code for tokens...")
        try:
            token = await tokens.exchange_authorization_code(code)
        except AuthRequired as exc:
            print(f"\n❌ Authorization failed: {exc}")
            print("Codes are single-use and short-lived; start over and paste it promptly.")
            return 1

        print(f"\n✅ Token stored (expires {token.expires_at.isoformat()} UTC)")
        print("If the refresh token ever expires, just re-run:  python -m exchangesync setup\n")
        return 0
    finally:
        await tokens.aclose()


def run_setup() -> None:
    settings = get_settings()
    if not settings.pp_client_id or not settings.pp_client_secret:
        print("Error: set PP_CLIENT_ID and PP_CLIENT_SECRET in .env first.")
        sys.exit(1)

    code = asyncio.run(_setup(settings))
    if code:
        sys.exit(code)


if __name__ == "__main__":
    run_setup()
