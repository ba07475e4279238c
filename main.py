#!/usr/bin/env python3
"""
AutoQueue - interactive console.

Opens the creation tool in a persistent Chromium profile, recovers any
interrupted items, then reads queue commands from stdin while the queue
runs in the background.
"""

import asyncio
import logging
import shlex
import sys
from typing import Any, Dict, List

# Load environment variables FIRST
from dotenv import load_dotenv
load_dotenv()

from pydantic import ValidationError

from autoqueue.agent import HostProcess
from autoqueue.config import Settings, load_settings, load_selectors
from autoqueue.core.exceptions import AutoQueueError
from autoqueue.infrastructure import BrowserService, JsonFileStorage, PromptGenerationClient

logger = logging.getLogger(__name__)

HELP = """
Commands:
  start                      Start processing the queue
  pause                      Pause after the current item
  resume                     Resume a paused queue
  stop                       Stop the queue
  status                     Show queue state and counters
  add <text>                 Add one prompt
  list                       List queued items with their ids
  edit <id> <text>           Replace an item's text and requeue it
  delete <id> [<id>...]      Delete items
  dup <id> [<count>]         Duplicate an item
  refine <id>                Rewrite an item with the generator
  select <id> [<id>...]      Process only the given items
  generate <count> <context> Generate prompts and queue them
  help                       Show this help
  quit                       Exit
"""


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if settings.log_file:
        handler = logging.FileHandler(settings.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        logging.getLogger().addHandler(handler)

    # Third-party chatter
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)


def print_result(result: Dict[str, Any]) -> None:
    if result.get("success"):
        print(f"✓ {result.get('message') or 'OK'}")
    else:
        print(f"✗ {result.get('error') or 'Failed'}")


def print_status(result: Dict[str, Any]) -> None:
    if not result.get("success"):
        print_result(result)
        return

    data = result["data"]
    state = data["state"]
    counts = data["counts"]

    if state["is_running"]:
        mode = "⏸ paused" if state["is_paused"] else "▶ running"
    else:
        mode = "⏹ stopped"

    print("-" * 70)
    print(f"Queue: {mode}")
    print(
        f"Items: {counts['total']} total | {counts['pending']} pending | "
        f"{counts['processing']} processing | {counts['completed']} completed | {counts['failed']} failed"
    )
    if state.get("current_prompt_id"):
        print(f"Current: {state['current_prompt_id']}")
    if state.get("last_error"):
        print(f"⚠ Last error: {state['last_error']}")
    print("-" * 70)


async def run_command(host: HostProcess, line: str) -> bool:
    """
    Execute one console line.

    Returns:
        False when the console should exit
    """
    try:
        parts: List[str] = shlex.split(line)
    except ValueError as e:
        print(f"✗ {e}")
        return True
    if not parts:
        return True

    command, args = parts[0].lower(), parts[1:]

    if command in ("quit", "exit"):
        return False
    if command == "help":
        print(HELP)
    elif command == "start":
        print_result(await host.handle_command("start_queue"))
    elif command == "pause":
        print_result(await host.handle_command("pause_queue"))
    elif command == "resume":
        print_result(await host.handle_command("resume_queue"))
    elif command == "stop":
        print_result(await host.handle_command("stop_queue"))
    elif command == "status":
        print_status(await host.handle_command("get_queue_status"))
    elif command == "add":
        if not args:
            print("Usage: add <text>")
        else:
            print_result(await host.handle_command("add_prompts", {"texts": [" ".join(args)]}))
    elif command == "list":
        for item in await host.storage.get_items():
            text = item.text if len(item.text) <= 60 else item.text[:57] + "..."
            print(f"  {item.id}  {item.status:<10}  {text}")
    elif command == "edit":
        if len(args) < 2:
            print("Usage: edit <id> <text>")
        else:
            print_result(await host.handle_command("edit_prompt", {"item_id": args[0], "text": " ".join(args[1:])}))
    elif command == "delete":
        if not args:
            print("Usage: delete <id> [<id>...]")
        else:
            print_result(await host.handle_command("delete_prompts", {"item_ids": args}))
    elif command == "dup":
        if not args or (len(args) > 1 and not args[1].isdigit()):
            print("Usage: dup <id> [<count>]")
        else:
            count = int(args[1]) if len(args) > 1 else 1
            print_result(await host.handle_command("duplicate_prompt", {"item_id": args[0], "count": count}))
    elif command == "refine":
        if len(args) != 1:
            print("Usage: refine <id>")
        else:
            print("🤖 Refining prompt...")
            print_result(await host.handle_command("refine_prompt", {"item_id": args[0]}))
    elif command == "select":
        if not args:
            print("Usage: select <id> [<id>...]")
        else:
            print_result(await host.handle_command("process_selected", {"item_ids": args}))
    elif command == "generate":
        if len(args) < 2 or not args[0].isdigit():
            print("Usage: generate <count> <context>")
        else:
            config = await host.storage.get_config()
            print("🤖 Generating prompts...")
            print_result(await host.handle_command("generate_prompts", {
                "count": int(args[0]),
                "context": " ".join(args[1:]),
                "media_kind": config.media_kind,
                "variations": config.variation_count,
                "enhanced": config.use_enhanced,
            }))
    else:
        print(f"Unknown command: {command} (type 'help')")

    return True


async def console(settings: Settings) -> int:
    selectors = load_selectors(settings.selectors_file)
    storage = JsonFileStorage(settings.storage_path, history_limit=settings.history_limit)
    generator = PromptGenerationClient(settings)

    if not generator.available:
        logger.warning("OPENAI_API_KEY not set - prompt generation disabled")

    async with BrowserService(settings, selectors) as browser:
        host = HostProcess(settings, selectors, storage, generator, browser)
        try:
            page_id = await host.start()
            print(f"✓ Target page ready (page {page_id}): {settings.target_url}")
            print(HELP)

            while True:
                line = await asyncio.to_thread(input, "📝 > ")
                if not await run_command(host, line.strip()):
                    break
        finally:
            await host.close()

    return 0


def main() -> int:
    """Main entry point."""
    print("\n" + "=" * 70)
    print("   AUTOQUEUE - PROMPT QUEUE FOR WEB CREATION TOOLS")
    print("=" * 70 + "\n")

    try:
        settings = load_settings()
    except ValidationError as e:
        print(f"\n❌ Configuration error:\n{e}")
        return 1

    configure_logging(settings)
    logger.info(f"✓ Configuration loaded (target: {settings.target_url})")

    try:
        return asyncio.run(console(settings))
    except (KeyboardInterrupt, EOFError):
        print("\n\n⚠ Interrupted")
        return 130
    except AutoQueueError as e:
        logger.error(f"Fatal error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
