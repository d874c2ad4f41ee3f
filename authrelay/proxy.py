import argparse
import logging
import signal
import sys

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from . import __version__
from .model.AuthRelayProxyServer import AuthRelayProxyServer
from .model.Core.AuthManager import AuthManager, build_auth
from .model.Core.Diagnostics import ProxyStats
from .model.Core.errors import ConfigurationError, ListenerError
from .model.Core.ForwarderClient import ForwarderClient
from .model.Core.SecretSource import KeyringSecretSource, SOURCES, get_secret_source
from .settings import load_settings, setup_logging

console = Console(stderr=True)
logger = logging.getLogger("authrelay")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="authrelay",
        description="Local proxy that forwards plain HTTP to one authenticated upstream",
    )
    parser.add_argument("-c", "--config", default=None, help="Path to appsettings.json")
    parser.add_argument("-p", "--port", type=int, default=None, help="Local port to listen on")
    parser.add_argument("-u", "--upstream", default=None, help="Upstream base URI")
    parser.add_argument("--use-default-credentials", action="store_true", default=None,
                        help="Authenticate with the ambient (Kerberos) identity")
    parser.add_argument("--auth-method", default=None, help="NTLM, Negotiate, Kerberos or Basic")
    parser.add_argument("--domain", default=None, help="Credential domain")
    parser.add_argument("--username", default=None, help="Credential user name")
    parser.add_argument("--secret-source", choices=sorted(SOURCES), default=None,
                        help="Where to get the password from")
    parser.add_argument("--concurrent", action="store_true", default=None,
                        help="Handle connections in a worker pool instead of one at a time")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--set-password", metavar="USER",
                        help="Store the password for USER in the keyring and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def overrides_from_args(args):
    return {
        "LocalPort": args.port,
        "UpstreamURI": args.upstream,
        "UseDefaultCredentials": args.use_default_credentials,
        "AuthenticationMethod": args.auth_method,
        "Domain": args.domain,
        "UserName": args.username,
        "SecretSource": args.secret_source,
        "ConcurrentRequests": args.concurrent,
        "LogLevel": args.log_level,
    }


def set_password(username, domain=""):
    if sys.stdin.isatty():
        password = Prompt.ask("Password", password=True, console=console)
    else:
        password = sys.stdin.readline().rstrip("\r\n")

    if not password:
        console.print("Empty password, skipping...")
        return 1

    KeyringSecretSource().store_secret(username, password, domain or "")
    console.print(f"Password stored in keyring for {username}")
    return 0


def print_banner(config):
    mode = "default credentials" if config.use_default_credentials else (
        f"{config.authentication_method} as {config.domain}\\{config.username}"
        if config.domain else f"{config.authentication_method} as {config.username}")
    console.print(Panel(
        f"[bold]Listen:[/bold] {', '.join(config.listen_hosts)} port {config.local_port}\n"
        f"[bold]Upstream:[/bold] {config.upstream_uri}\n"
        f"[bold]Auth:[/bold] {mode}\n"
        f"[bold]Mode:[/bold] {'concurrent' if config.concurrent_requests else 'single-flight'}",
        title=f"[bold cyan]AuthRelay {__version__}[/bold cyan]",
        border_style="green",
        padding=(1, 2),
    ))


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.set_password:
        return set_password(args.set_password, args.domain)

    try:
        settings = load_settings(args.config, overrides_from_args(args))
        setup_logging(settings.logging)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return 2

    config = settings.proxy
    logger.info("AuthRelay log began!")
    print_banner(config)

    try:
        source = None if config.use_default_credentials else get_secret_source(config.secret_source)
        binding = AuthManager(config, source).resolve()
        auth = build_auth(binding)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    forwarder = ForwarderClient(auth=auth, timeout=config.upstream_timeout,
                                verify=config.verify_tls,
                                pool_size=config.max_workers if config.concurrent_requests else 1)
    stats = ProxyStats()
    server = AuthRelayProxyServer(config, forwarder, hooks=stats)

    signal.signal(signal.SIGINT, server.signal_handler)
    signal.signal(signal.SIGTERM, server.signal_handler)

    try:
        server.start()
    except ListenerError as e:
        logger.error(f"Failed to start server: {e}")
        return 1
    finally:
        forwarder.close()

    console.print(stats.build_summary())
    return 0


if __name__ == "__main__":
    sys.exit(main())
