"""
Multi-Calendar MCP Server
=========================

An MCP server that exposes Google Calendar across several Google accounts
at once. Calendars shared between accounts are merged into one entry and
each operation is routed through the account with the best access.

Setup:
    1. Copy .env.example to .env and fill in your credentials path
    2. Run: uv run multi-calendar-mcp auth <account_id> for each account
       (opens the Google OAuth browser flow, e.g. 'work' and 'personal')
    3. Add `multi-calendar-mcp` to your MCP client config

Usage with Claude:
    - "What's on my work and personal calendars this week?"
    - "Am I double-booked across my accounts on Thursday?"
    - "Add these five sessions to the team calendar"
"""

import logging
import sys

from mcp.server.fastmcp import FastMCP

from .auth import authorize_account
from .context import ServerContext
from .logging_config import setup_logging
from .tools import register_calendar_tools, register_schedule_tools

logger = logging.getLogger(__name__)

ctx = ServerContext()

# Initialize the MCP server
mcp = FastMCP(
    "multi_calendar_mcp",
    instructions=(
        "This server manages Google Calendar across several connected accounts. "
        "Use gcal_list_accounts and gcal_list_calendars to see what is available; "
        "calendars shared between accounts are listed once with the preferred "
        "account. Omit 'account' to let the server pick the account with the best "
        "access. Use gcal_create_events to create several events in one call and "
        "schedule_find_conflicts to detect double-bookings across accounts. "
        "gcal_get_freebusy and gcal_find_free_slots merge busy time from every "
        "selected account."
    ),
)

# Register all tool groups
register_calendar_tools(mcp, ctx)
register_schedule_tools(mcp, ctx)


def _authorize(account_id: str) -> int:
    try:
        token_path = authorize_account(account_id, ctx.settings)
    except Exception as e:
        logger.error("Authorization for %s failed: %s", account_id, e)
        return 1
    logger.info("Saved token for account %s to %s", account_id, token_path)
    return 0


def main() -> None:
    """Entry point for the multi-calendar-mcp command."""
    setup_logging(ctx.settings.log_level)
    args = sys.argv[1:]
    if args[:1] == ["auth"]:
        if len(args) != 2:
            print("usage: multi-calendar-mcp auth <account_id>", file=sys.stderr)
            sys.exit(2)
        sys.exit(_authorize(args[1]))

    logger.info("multi-calendar-mcp: starting up...")
    ctx.reload_accounts()
    try:
        mcp.run()
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("multi-calendar-mcp: shutting down.")


if __name__ == "__main__":
    main()
