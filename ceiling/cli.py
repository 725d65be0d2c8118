"""
Ceiling Command Line Interface.

Provides commands for generating identities, running the services, and
inspecting access tokens.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from jwcrypto.common import base64url_decode

from ceiling.config import (
    AUTH_PORT,
    ISSUER_PORT,
    RESOURCE_PORT,
    WALLET_PORT,
    load_settings,
    print_config,
)
from ceiling.errors import CeilingError
from ceiling.keys import generate_identity, load_or_create_keypair

SERVICE_PORTS = {
    "issuer": ISSUER_PORT,
    "wallet": WALLET_PORT,
    "auth": AUTH_PORT,
    "resource": RESOURCE_PORT,
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def cmd_init(args: argparse.Namespace) -> int:
    """Generate a new Ed25519 identity (did:jwk)."""
    try:
        if args.out:
            keypair = load_or_create_keypair(args.out)
            print(f"DID: {keypair.did}")
            print(f"Key file: {args.out}")
            return 0

        keypair = generate_identity()
        print(f"DID: {keypair.did}")
        print("\n--- PRIVATE KEY (keep secret) ---")
        print(keypair.private_key_jwk)
        print("\n--- PUBLIC KEY ---")
        print(keypair.public_key_jwk)
        return 0
    except (OSError, ValueError) as e:
        print(f"Error generating keys: {e}", file=sys.stderr)
        return 1


def _create_service_app(service: str, settings):
    if service == "issuer":
        from ceiling.services.issuer import create_app
    elif service == "wallet":
        from ceiling.services.wallet import create_app
    elif service == "auth":
        from ceiling.services.auth import create_app
    else:
        from ceiling.services.resource import create_app
    return create_app(settings=settings)


def cmd_serve(args: argparse.Namespace) -> int:
    """Run one of the HTTP services."""
    import uvicorn

    try:
        settings = load_settings()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1

    app = _create_service_app(args.service, settings)
    port = args.port or SERVICE_PORTS[args.service]
    uvicorn.run(app, host=args.host, port=port, log_level="debug" if args.verbose else "info")
    return 0


def _decode_segment(segment: str) -> dict:
    return json.loads(base64url_decode(segment))


def cmd_decode(args: argparse.Namespace) -> int:
    """Decode an access token; verify it against the auth server when asked."""
    parts = args.token.split(".")
    if len(parts) != 3:
        print("Error: not a compact JWS token", file=sys.stderr)
        return 1
    try:
        header = _decode_segment(parts[0])
        payload = _decode_segment(parts[1])
    except ValueError as e:
        print(f"Error: unreadable token: {e}", file=sys.stderr)
        return 1

    result = {"header": header, "payload": payload}

    if args.verify:
        from ceiling.tokens import RemoteKeySet, TokenValidator

        settings = load_settings()
        validator = TokenValidator(
            RemoteKeySet(args.auth_url or settings.auth_server_url, http_timeout=settings.http_timeout),
            audience=args.audience or settings.audience,
        )
        try:
            validated = asyncio.run(validator.validate(args.token))
            result["valid"] = True
            result["grants"] = [
                {"capability": g.capability, "ceiling": g.ceiling} for g in validated.grants
            ]
        except CeilingError as e:
            result["valid"] = False
            result["error"] = e.to_dict()

    print(json.dumps(result, indent=2))
    return 0 if result.get("valid", True) else 1


def cmd_config(args: argparse.Namespace) -> int:
    """Print the effective configuration."""
    try:
        print_config()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="ceiling",
        description="Ceiling - credential-bound approval limits for agent actions",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    p_init = subparsers.add_parser("init", help="Generate a new did:jwk identity")
    p_init.add_argument("--out", help="Write (or reuse) a key file at this path")

    # serve command
    p_serve = subparsers.add_parser("serve", help="Run a service")
    p_serve.add_argument("service", choices=sorted(SERVICE_PORTS), help="Service to run")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    p_serve.add_argument("--port", type=int, help="Port (defaults to the service port)")

    # decode command
    p_decode = subparsers.add_parser("decode", help="Decode an access token")
    p_decode.add_argument("token", help="The token to decode")
    p_decode.add_argument("--verify", action="store_true", help="Validate against the auth server JWKS")
    p_decode.add_argument("--auth-url", help="Authorization server base URL")
    p_decode.add_argument("--audience", help="Expected audience")

    # config command
    subparsers.add_parser("config", help="Show effective configuration")

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "serve":
        return cmd_serve(args)
    elif args.command == "decode":
        return cmd_decode(args)
    elif args.command == "config":
        return cmd_config(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
