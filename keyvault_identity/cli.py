"""
Command line entry point: resolve a token, read a secret, or rotate the
SQL administrator password once or on a schedule.
"""
import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from .errors import NoCredentialAvailable, RotationError, SecretRetrievalFailed
from .keyvault_functions import retrieve_secret
from .resolver import KEY_VAULT_RESOURCE, CredentialResolver
from .rotation_functions import RotationConfig, RotationJob

logger = logging.getLogger(__name__)


def cmd_resolve(args):
    resolver = CredentialResolver.from_environment()
    resolution = resolver.resolve(args.resource)
    print(json.dumps({
        "source": str(resolution.source),
        "principal_type": str(resolution.principal.kind),
        "principal_name": resolution.principal.name,
        "tenant_id": resolution.principal.tenant_id,
        "expires_on": resolution.token.expires_on,
    }, indent=2))
    return 0


def cmd_get_secret(args):
    resolver = CredentialResolver.from_environment()
    record = retrieve_secret(args.name, vault_url=args.vault_url, credential=resolver)
    print(f"Secret: {record.name} = {record.value if args.show else record.masked()}")
    print(f"Principal Used: {resolver.principal_used} via {resolver.last_resolution.source}")
    return 0


def cmd_rotate(args):
    result = RotationJob(RotationConfig.from_environment()).run()
    print(f"Rotated '{result.secret_name}' on {result.server_name}, new version {result.secret_version}")
    return 0


def cmd_schedule(args):
    job = RotationJob(RotationConfig.from_environment())
    logger.info("Rotating every %s seconds", args.interval)
    job.run_forever(args.interval)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="keyvault-identity",
        description="Access Key Vault with a managed identity and rotate secrets",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve = subparsers.add_parser("resolve", help="obtain a token and show the principal used")
    resolve.add_argument("--resource", default=KEY_VAULT_RESOURCE, help="resource URI to request a token for")
    resolve.set_defaults(func=cmd_resolve)

    get_secret = subparsers.add_parser("get-secret", help="read a secret from Key Vault")
    get_secret.add_argument("name", help="secret name")
    get_secret.add_argument("--vault-url", help="vault URL (default: KEY_VAULT_URL)")
    get_secret.add_argument("--show", action="store_true", help="print the value unmasked")
    get_secret.set_defaults(func=cmd_get_secret)

    rotate = subparsers.add_parser("rotate", help="rotate the SQL administrator password once")
    rotate.set_defaults(func=cmd_rotate)

    schedule = subparsers.add_parser("schedule", help="rotate on a fixed interval")
    schedule.add_argument("--interval", type=float, default=86400, help="seconds between runs (default: 86400)")
    schedule.set_defaults(func=cmd_schedule)

    return parser


def main(argv=None):
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    try:
        return args.func(args)
    except NoCredentialAvailable as e:
        print(e.message, file=sys.stderr)
        return 2
    except SecretRetrievalFailed as e:
        print(f"Error: {e}", file=sys.stderr)
        return 3
    except RotationError as e:
        if e.partial:
            print(f"Error: {e} (server and vault are out of sync)", file=sys.stderr)
        else:
            print(f"Error: {e}", file=sys.stderr)
        return 4
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
