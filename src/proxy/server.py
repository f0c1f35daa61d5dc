"""
Proxy Server Entry Point

Standalone server for running hproxy as a policy-gated reverse proxy, or as
a plain passthrough proxy when a target host is given.
"""

import os
import sys
from pathlib import Path
from typing import Optional
import structlog
import uvicorn

from src.config.logging import configure_logging
from src.config.settings import ServerSettings, get_settings
from src.proxy.config import PolicyConfig, PolicyStore
from src.proxy.errors import ConfigurationError
from src.proxy.forwarder import UpstreamForwarder
from src.proxy.gateway import create_proxy_app
from src.proxy.passthrough import create_passthrough_app

logger = structlog.get_logger(__name__)


def run_proxy_server(
    server: Optional[ServerSettings] = None,
    log_level: str = "info",
) -> None:
    """
    Run the policy-gated reverse proxy.

    Exits with status 1 when the initial policy cannot be loaded.

    Args:
        server: Server settings (listen address, config sources, timeouts)
        log_level: Logging level
    """
    if server is None:
        server = get_settings()

    try:
        policy_store = PolicyStore.from_sources(server.config_file, server.env_file)
    except ConfigurationError as e:
        logger.error("configuration_invalid", error=str(e))
        print(f"Configuration error: {e}")
        sys.exit(1)

    print_banner(server, policy_store.current())

    app = create_proxy_app(server=server, policy_store=policy_store)

    uvicorn.run(
        app,
        host=server.listen_host,
        port=server.listen_port,
        log_level=log_level,
        access_log=False,
    )


def run_passthrough_server(
    target_host: str,
    server: Optional[ServerSettings] = None,
    log_level: str = "info",
) -> None:
    """
    Run the passthrough proxy for ``target_host``.

    Args:
        target_host: Host every request is relayed to
        server: Server settings (listen address, timeouts)
        log_level: Logging level
    """
    if server is None:
        server = get_settings()

    logger.info(
        "passthrough_configured",
        port=server.listen_port,
        target_host=target_host,
    )

    forwarder = UpstreamForwarder(
        request_timeout=server.read_timeout,
        connect_timeout=server.connect_timeout,
    )
    app = create_passthrough_app(target_host, forwarder=forwarder)

    uvicorn.run(
        app,
        host=server.listen_host,
        port=server.listen_port,
        log_level=log_level,
        access_log=False,
    )


def print_banner(server: ServerSettings, policy: PolicyConfig) -> None:
    """Print startup banner."""
    def enabled(value) -> str:
        return "Enabled" if value else "Disabled"

    print(f"""
┌─────────────────────────────────────────────────────────────────────────────┐
│  hproxy - policy-gated reverse proxy                                        │
├─────────────────────────────────────────────────────────────────────────────┤
│  Listen Address:    {f"{server.listen_host}:{server.listen_port}":<56}│
│  Origin:            {policy.origin:<56}│
│  Config File:       {str(server.config_file):<56}│
│  Env File:          {str(server.env_file):<56}│
│  Redirect On Deny:  {policy.redirect_url or "(fallback page)":<56}│
├─────────────────────────────────────────────────────────────────────────────┤
│  Rules                                                                      │
├─────────────────────────────────────────────────────────────────────────────┤""")
    print(f"│  • Path Pattern:       {enabled(policy.path_pattern is not None):<53}│")
    print(f"│  • User-Agent Rules:   {enabled(policy.ua_whitelist or policy.ua_blacklist):<53}│")
    print(f"│  • IP Lists:           {enabled(not policy.ip_rules.is_empty):<53}│")
    print(f"│  • IP Patterns:        {enabled(policy.ip_whitelist or policy.ip_blacklist):<53}│")
    print(f"│  • Region Rules:       {enabled(policy.region_whitelist or policy.region_blacklist):<53}│")
    print(f"│  • Debug Mode:         {enabled(policy.debug):<53}│")
    print("""└─────────────────────────────────────────────────────────────────────────────┘

  Starting proxy server...
""")


def main():
    """Main entry point for proxy server."""
    import argparse

    parser = argparse.ArgumentParser(
        description="hproxy - policy-gated HTTP reverse proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run proxy with proxyconfig.json or .env from the working directory
  python -m src.proxy.server

  # Run proxy on custom port with an explicit config file
  python -m src.proxy.server --port 9000 --config /etc/hproxy/proxyconfig.json

  # Relay everything to one host without rules or rewriting
  python -m src.proxy.server --target-host files.example.com --port 8080
        """,
    )

    parser.add_argument(
        "--host",
        default=os.getenv("LISTEN_HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: 5213, or 8080 in passthrough mode)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Policy JSON file (default: proxyconfig.json)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Env file used when the JSON file is absent (default: .env)",
    )
    parser.add_argument(
        "--target-host",
        default="",
        help="Run in passthrough mode, relaying every request to this host",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=os.getenv("LOG_LEVEL", "info").lower(),
        help="Log level (default: info)",
    )

    args = parser.parse_args()

    configure_logging(args.log_level)

    # Command-line flags override environment settings
    overrides = {"LISTEN_HOST": args.host}
    if args.port is not None:
        overrides["LISTEN_PORT"] = args.port
    elif args.target_host and "LISTEN_PORT" not in os.environ:
        overrides["LISTEN_PORT"] = 8080
    if args.config is not None:
        overrides["PROXY_CONFIG_FILE"] = args.config
    if args.env_file is not None:
        overrides["PROXY_ENV_FILE"] = args.env_file
    server = ServerSettings(**overrides)

    if args.target_host:
        run_passthrough_server(args.target_host, server=server, log_level=args.log_level)
    else:
        run_proxy_server(server=server, log_level=args.log_level)


if __name__ == "__main__":
    main()
