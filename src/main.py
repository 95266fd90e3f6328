"""CLI entry point for the clinic assistant.

This provides a simple terminal-based chat interface against the seeded
in-memory clinic, for testing and development.  For production, use the
FastAPI server (src/server.py).

Usage:
    uv run python -m src.main                          # customer agent
    uv run python -m src.main --staff --role DOCTOR    # staff copilot
    uv run python -m src.main --debug                  # show all log messages
"""

from __future__ import annotations

import argparse
import logging
import uuid

from dotenv import load_dotenv

from src.agent import create_orchestrator
from src.models import CustomerAgentRequest, Role, StaffCopilotRequest
from src.services.clinic_backend import InMemoryClinicBackend, seed_demo
from src.tools.permissions import customer_agent_caller, staff_caller

logger = logging.getLogger(__name__)

DEMO_TENANT = "demo-clinic"


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Always keep our own logger at INFO minimum so session starts show
    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_customer(reply) -> None:
    print(f"\nAssistant: {reply.response}")
    if reply.requires_human_handoff:
        print(f"  [handoff: {reply.handoff_reason}]")
    for action in reply.suggested_actions:
        print(f"  [suggested {action.type}: {action.description}]")
    print()


def _print_staff(reply) -> None:
    print(f"\nCopilot: {reply.response}")
    for execution in reply.tools_executed:
        status = "ok" if execution.success else f"failed: {execution.error}"
        print(f"  [{execution.tool}: {status}]")
    if reply.suggested_follow_ups:
        print(f"  Try: {' | '.join(reply.suggested_follow_ups)}")
    print()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Clinic Assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including tool dispatches",
    )
    parser.add_argument(
        "--staff", action="store_true",
        help="Talk to the staff copilot instead of the customer agent",
    )
    parser.add_argument(
        "--role", default=Role.RECEPTION.value, choices=[r.value for r in Role],
        help="Staff role used with --staff (default: RECEPTION)",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    title = f"Staff Copilot ({args.role})" if args.staff else "Customer Agent"
    print("\n" + "=" * 60)
    print(f"  Clinic Assistant - {title}")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    orchestrator = create_orchestrator(seed_demo(InMemoryClinicBackend(), DEMO_TENANT))
    if args.staff:
        caller = staff_caller("reception-1", DEMO_TENANT, Role(args.role), {"branch-main"})
    else:
        caller = customer_agent_caller(DEMO_TENANT)
    conversation_id = str(uuid.uuid4())
    logger.info("Started new conversation: %s", conversation_id)

    try:
        while True:
            try:
                user_input = input("You: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nGoodbye!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nGoodbye! Have a great day!")
                break

            if user_input.lower() == "new":
                conversation_id = str(uuid.uuid4())
                print(f"\n>> New conversation started: {conversation_id[:8]}...\n")
                continue

            try:
                if args.staff:
                    reply = orchestrator.handle_staff_query(
                        StaffCopilotRequest(query=user_input, conversation_id=conversation_id), caller,
                    )
                    _print_staff(reply)
                else:
                    reply = orchestrator.handle_customer_message(
                        CustomerAgentRequest(message=user_input, conversation_id=conversation_id), caller,
                    )
                    _print_customer(reply)

            except KeyboardInterrupt:
                print("\n\nGoodbye!")
                break
            except Exception as e:
                logger.exception("Error processing message")
                print(f"\nAssistant: I'm sorry, something went wrong: {e}")
                print("     Please try again or type 'new' to start a fresh conversation.\n")
    finally:
        orchestrator.shutdown()


if __name__ == "__main__":
    main()
