import argparse
import os
from collections.abc import Sequence

import uvicorn
from pydantic import ValidationError

from harvest.config import ConfigurationInvalid, get_settings
from harvest.logging_config import configure_logging
from harvest.process import fatal


EPILOG = """
Environment variables:
  GITHUB_WEBHOOK_SECRET          Secret used to verify webhook signatures.
  GITHUB_TOKEN                   Token allowed to create runner registration tokens.
  GITHUB_ENTERPRISE_HOSTNAME     GitHub Enterprise host; defaults to github.com.
  GITHUB_WEBHOOK_HOST/PORT       Listen address; defaults to 0.0.0.0:3000.
  ORCHARD_URL                    Controller URL; defaults to https://localhost:6120.
  ORCHARD_BOOTSTRAP_ADMIN_TOKEN  Token of the bootstrap-admin service account.
                                 Defaults to empty when both controller and
                                 worker are run by harvest; required otherwise.
  ORCHARD_SUPPORTED_IMAGES       Comma-separated, ordered list of image labels.
  ORCHARD_DATA_DIR               Orchard data directory; defaults to $HOME/.orchard.
  ORCHARD_CERT_PATH              Controller certificate; requires ORCHARD_CERT_KEY_PATH.
  ORCHARD_CERT_KEY_PATH          Controller certificate key; requires ORCHARD_CERT_PATH.
  ENV_FILE_PATH                  .env file to load; defaults to ./.env.
                                 Takes precedence over --env.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harvest",
        description=(
            "Auto-scaling GitHub Actions runners on ephemeral Orchard VMs. "
            "Optionally manages the Orchard controller and a worker."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("-e", "--env", metavar="FILE", help="Path to a .env file.")
    parser.add_argument(
        "--run-orchard-controller",
        action="store_true",
        help="Run the Orchard controller as part of harvest instead of using the default context.",
    )
    parser.add_argument(
        "--run-orchard-worker",
        action="store_true",
        help="Run an Orchard worker as part of harvest. Requires --run-orchard-controller.",
    )
    parser.add_argument(
        "--disable-auto-trust",
        action="store_true",
        help="Do not auto-trust the controller certificate when creating the Orchard context.",
    )
    parser.add_argument("--host", help="Override GITHUB_WEBHOOK_HOST.")
    parser.add_argument("--port", type=int, help="Override GITHUB_WEBHOOK_PORT.")
    return parser


def apply_overrides(args: argparse.Namespace) -> None:
    if args.env:
        # An ENV_FILE_PATH already in the environment wins over --env.
        os.environ.setdefault("ENV_FILE_PATH", args.env)
    flags = {
        "VERBOSE": args.verbose,
        "RUN_ORCHARD_CONTROLLER": args.run_orchard_controller,
        "RUN_ORCHARD_WORKER": args.run_orchard_worker,
        "DISABLE_AUTO_TRUST": args.disable_auto_trust,
    }
    for name, enabled in flags.items():
        if enabled:
            os.environ[name] = "true"
    if args.host:
        os.environ["GITHUB_WEBHOOK_HOST"] = args.host
    if args.port:
        os.environ["GITHUB_WEBHOOK_PORT"] = str(args.port)
    get_settings.cache_clear()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    apply_overrides(args)
    configure_logging(args.verbose)
    try:
        settings = get_settings()
    except (ConfigurationInvalid, ValidationError) as exc:
        fatal(f"invalid configuration: {exc}")
    uvicorn.run(
        "harvest.main:app",
        host=settings.github_webhook_host,
        port=settings.github_webhook_port,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
