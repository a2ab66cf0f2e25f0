"""
Run Client — end-to-end: tool server → session → (planner) → answer.

This is the script that closes the loop. It:
1. Opens a session to the configured tool server (TOOLBRIDGE_SERVER_ENDPOINT)
2. Lists the tools the server exposes
3. Optionally calls one tool directly
4. Optionally hands a goal to a LangChain chat model through the DispatchLoop

Usage:
    # Start a server first
    python -m toolbridge.servers --tcp 127.0.0.1:5057

    # List available tools
    python run_client.py --list

    # Call one tool
    python run_client.py --call get_weather --args '{"city": "Boston"}'

    # Let a model plan (requires the [llm] extra and provider credentials)
    python run_client.py --goal "what's the weather like in Boston today?" --model openai:gpt-4o-mini
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from toolbridge.bridge import describe_tools
from toolbridge.config import get_settings
from toolbridge.dispatch import DispatchLoop
from toolbridge.errors import ToolBridgeError
from toolbridge.manager import ToolSessionManager

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "openai:gpt-4o-mini"


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    manager = ToolSessionManager(settings)

    try:
        session = await manager.open(args.endpoint)
        tools = await manager.list_tools(session)
        print(describe_tools(tools))

        if args.call:
            result = await manager.call_tool(session, args.call, args.arguments)
            print(f"\n{args.call} → {json.dumps(result.payload, indent=2, default=str)}")

        if args.goal:
            # LangChain's model factory is only needed here
            from langchain.chat_models import init_chat_model

            from toolbridge.bridge import LangChainPlanner

            model = init_chat_model(args.model, temperature=0)
            loop = DispatchLoop(manager, session, LangChainPlanner(model))
            print(f"\n{args.goal}\n")
            print(await loop.run(args.goal))
    except ToolBridgeError as e:
        logger.error(f"{e.__class__.__name__}: {e}")
        return 1
    finally:
        await manager.close_all()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="List and call tools on a toolbridge server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_client.py --list
  python run_client.py --call get_weather --args '{"city": "Boston"}'
  python run_client.py --goal "what's the weather like in Boston today?"
        """,
    )
    parser.add_argument("--list", action="store_true", help="List available tools and exit")
    parser.add_argument("--endpoint", "-e", type=str, default=None, help="Override TOOLBRIDGE_SERVER_ENDPOINT")
    parser.add_argument("--call", type=str, default=None, help="Tool to call once")
    parser.add_argument("--args", type=str, default="{}", help="JSON object of arguments for --call")
    parser.add_argument("--goal", type=str, default=None, help="Goal for the planner")
    parser.add_argument("--model", "-m", type=str, default=DEFAULT_MODEL, help="Chat model for --goal (provider:model)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else get_settings().log_level.upper(),
        format="%(levelname)s: %(message)s",
    )

    if args.list:
        args.call = None
        args.goal = None

    try:
        args.arguments = json.loads(args.args)
    except json.JSONDecodeError as e:
        parser.error(f"--args is not valid JSON: {e}")
    if not isinstance(args.arguments, dict):
        parser.error("--args must be a JSON object")

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
