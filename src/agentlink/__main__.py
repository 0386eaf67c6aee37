"""Entry point for `python -m agentlink` / `agentlink`.

Subcommands:
    agentlink                   Run the service (default)
    agentlink status            Show the saved registration and chat credentials
    agentlink connect           Start pairing on the running service
    agentlink disconnect        Disconnect from the backend
    agentlink report-context    Send a work-context report now
    agentlink chat ...          Register, start, stop, inspect or use chat
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from agentlink.types import CHAT_ROLES


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _control_url() -> str:
    from agentlink.config import get_settings

    s = get_settings()
    return f"http://{s.server.host}:{s.server.port}"


def _run() -> None:
    from agentlink._lifecycle import run_app
    from agentlink.app import AgentLinkApp
    from agentlink.config import get_settings
    from agentlink.logger import set_level

    s = get_settings()
    set_level(s.logging.level)
    asyncio.run(run_app(AgentLinkApp(s)))


def _status() -> None:
    from agentlink.config import get_settings
    from agentlink.state import Stores

    stores = Stores.from_settings(get_settings())
    registration = stores.registration.load()
    credentials = stores.chat_credentials.load()
    _print(
        {
            "registered": registration is not None,
            "registration": registration.public_dict() if registration else None,
            "chat": {
                "registered": credentials is not None,
                "enabled": bool(credentials and credentials.enabled),
                "agent_id": credentials.agent_id if credentials else None,
                "agent_name": credentials.agent_name if credentials else None,
                "last_heartbeat_at": credentials.last_heartbeat_at if credentials else None,
            },
            "pending_sync": len(stores.pending_sync.load()),
        }
    )


async def _connect(device_name: str | None) -> None:
    from agentlink.config import get_settings
    from agentlink.control_client import ControlClient
    from agentlink.state import RegistrationStore

    registration = RegistrationStore(get_settings().registration_path).load()
    if registration is not None:
        print(f"Already connected as {registration.device_name} ({registration.connector_id})")
        return
    result = await ControlClient(_control_url()).connect(device_name)
    if result.get("registered"):
        _print(result)
        return
    print("Scan this pairing code with the app:")
    print(result["qr_payload"])
    print(f"(expires in {int(result['expires_in'])}s)")


async def _chat_register(args: argparse.Namespace) -> None:
    from agentlink.chat import register_agent

    credentials = await register_agent(
        name=args.name,
        description=args.description,
        role=args.role,
        endpoint=args.endpoint,
        tags=args.tag or None,
    )
    print(f"Registered agent {credentials.agent_name} ({credentials.agent_id})")
    print("Chat is disabled until you run `agentlink chat start`.")


def _chat_status() -> None:
    from agentlink.config import get_settings
    from agentlink.state import ChatCredentialsStore

    credentials = ChatCredentialsStore(get_settings().chat_credentials_path).load()
    if credentials is None:
        print("No chat credentials. Run `agentlink chat register` first.")
        return
    _print(
        {
            "agent_id": credentials.agent_id,
            "agent_name": credentials.agent_name,
            "role": credentials.role,
            "enabled": credentials.enabled,
            "last_heartbeat_at": credentials.last_heartbeat_at,
            "processed_messages": len(credentials.processed_message_ids),
        }
    )


async def _control(command: str, args: argparse.Namespace) -> None:
    from agentlink.control_client import ControlClient

    client = ControlClient(_control_url())
    match command:
        case "disconnect":
            result = await client.disconnect(
                delete_remote=args.delete_remote, clear_local=not args.keep_local
            )
        case "report-context":
            result = await client.report_context()
        case "chat-start":
            result = await client.chat_start()
        case "chat-stop":
            result = await client.chat_stop()
        case "chat-send":
            result = await client.chat_send(args.target, args.content)
        case _:
            raise ValueError(command)
    _print(result)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentlink",
        description="Connect a local agent to the pairing backend and the messaging hub",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the service (default)")
    sub.add_parser("status", help="Show saved registration and chat state")
    connect = sub.add_parser("connect", help="Start QR pairing on the running service")
    connect.add_argument("--device-name", default=None)
    disconnect = sub.add_parser("disconnect", help="Disconnect from the backend")
    disconnect.add_argument("--delete-remote", action="store_true", help="Also delete the remote connector")
    disconnect.add_argument("--keep-local", action="store_true", help="Keep the local registration file")
    sub.add_parser("report-context", help="Send a work-context report now")

    chat = sub.add_parser("chat", help="Agent-to-agent messaging")
    chat_sub = chat.add_subparsers(dest="chat_command", required=True)
    register = chat_sub.add_parser("register", help="Register this agent on the hub")
    register.add_argument("--name", required=True)
    register.add_argument("--description", required=True)
    register.add_argument("--role", choices=CHAT_ROLES, default="both")
    register.add_argument("--endpoint", default=None)
    register.add_argument("--tag", action="append", help="Repeatable")
    chat_sub.add_parser("start", help="Enable chat and start polling")
    chat_sub.add_parser("stop", help="Stop polling and disable chat")
    chat_sub.add_parser("status", help="Show chat credentials")
    send = chat_sub.add_parser("send", help="Send a message to another agent")
    send.add_argument("target")
    send.add_argument("content")
    return parser


def main(argv: list[str] | None = None) -> None:
    from agentlink.errors import AgentLinkError

    args = _build_parser().parse_args(argv)
    try:
        match args.command:
            case "status":
                _status()
            case "connect":
                asyncio.run(_connect(args.device_name))
            case "disconnect" | "report-context":
                asyncio.run(_control(args.command, args))
            case "chat":
                match args.chat_command:
                    case "register":
                        asyncio.run(_chat_register(args))
                    case "status":
                        _chat_status()
                    case other:
                        asyncio.run(_control(f"chat-{other}", args))
            case _:
                _run()
    except AgentLinkError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
