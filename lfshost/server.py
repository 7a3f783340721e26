"""Provide the server."""

import argparse
import logging
import os
import sys
from os import environ as env
from pathlib import Path
from typing import Dict, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException

from lfshost import __version__
from lfshost.auth import (
    Authenticator,
    BitBucketAuthenticator,
    DictionaryAuthenticator,
    GitHubAuthenticator,
)
from lfshost.core import ConfigurationError
from lfshost.lfs import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_TIMEOUT,
    BatchProcessor,
    create_lfs_router,
    lfs_error_response,
)
from lfshost.storage import DEFAULT_EXPIRES_IN, AzureBlobAdapter, BlobAdapter, S3BlobAdapter
from lfshost.storage.s3 import create_s3_client_factory

LOGLEVEL = os.environ.get("LFS_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("server")
logger.setLevel(LOGLEVEL)

ENV_FILE = find_dotenv(usecwd=True)
if ENV_FILE:
    load_dotenv(ENV_FILE)

ENV_PREFIX = "LFS_"

# Options that together select one authenticator
AUTH_OPTIONS = {
    "dictionary": ("username", "password"),
    "users-file": ("users_file",),
    "github": ("github_organisation", "github_repository"),
    "bitbucket": ("bitbucket_workspace", "bitbucket_repository"),
}

# Options that together select one storage backend
STORAGE_OPTIONS = {
    "s3": ("s3_bucket",),
    "azure": ("azure_container", "azure_connection_string"),
}


def get_argparser(add_help=True):
    """Return the argument parser."""
    parser = argparse.ArgumentParser(add_help=add_help)
    parser.add_argument(
        "--from-env",
        action="store_true",
        help="load arguments from environment variables, the environment variables should be in the format of LFS_<ARG_NAME_UPPER>",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="host for the LFS server",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="port for the LFS server",
    )
    parser.add_argument(
        "--base-path",
        type=str,
        default="/",
        help="the base path for the server, e.g. /repo.git/info/lfs",
    )
    # authentication
    parser.add_argument(
        "--username",
        type=str,
        default=None,
        help="username for static user/password authentication",
    )
    parser.add_argument(
        "--password",
        type=str,
        default=None,
        help="password for static user/password authentication",
    )
    parser.add_argument(
        "--users-file",
        type=str,
        default=None,
        help="a YAML or JSON file mapping usernames to passwords",
    )
    parser.add_argument(
        "--github-organisation",
        type=str,
        default=None,
        help="GitHub organisation whose repository grants access",
    )
    parser.add_argument(
        "--github-repository",
        type=str,
        default=None,
        help="GitHub repository that grants access",
    )
    parser.add_argument(
        "--bitbucket-workspace",
        type=str,
        default=None,
        help="BitBucket workspace whose repository grants access",
    )
    parser.add_argument(
        "--bitbucket-repository",
        type=str,
        default=None,
        help="BitBucket repository that grants access",
    )
    # storage
    parser.add_argument(
        "--s3-bucket",
        type=str,
        default=None,
        help="S3 bucket storing LFS objects",
    )
    parser.add_argument(
        "--s3-region",
        type=str,
        default=None,
        help="S3 region (or provider region for S3-compatible storage)",
    )
    parser.add_argument(
        "--s3-endpoint-url",
        type=str,
        default=None,
        help="endpoint URL for S3-compatible providers",
    )
    parser.add_argument(
        "--s3-access-key",
        type=str,
        default=None,
        help="S3 access key id, the default credential chain is used if not set",
    )
    parser.add_argument(
        "--s3-access-secret",
        type=str,
        default=None,
        help="S3 secret access key",
    )
    parser.add_argument(
        "--s3-acceleration",
        action="store_true",
        help="sign URLs for the S3 transfer acceleration endpoint",
    )
    parser.add_argument(
        "--azure-container",
        type=str,
        default=None,
        help="Azure blob container storing LFS objects",
    )
    parser.add_argument(
        "--azure-connection-string",
        type=str,
        default=None,
        help="Azure storage account connection string",
    )
    # batch processing
    parser.add_argument(
        "--key-prefix",
        type=str,
        default="",
        help="prefix of the storage keys of LFS objects",
    )
    parser.add_argument(
        "--url-expiry",
        type=int,
        default=DEFAULT_EXPIRES_IN,
        help="lifetime in seconds of the signed transfer URLs",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help="timeout in seconds for identity provider and storage calls",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=DEFAULT_MAX_CONCURRENCY,
        help="storage calls in flight for one batch request",
    )
    return parser


def get_args_from_env():
    """Read the server arguments from environment variables."""
    parser = get_argparser(add_help=False)
    args = parser.parse_args([])

    # Get the argument types from the parser
    arg_types = {
        action.dest: action.type
        for action in parser._actions
        if action.type is not None
    }
    arg_bools = {
        action.dest
        for action in parser._actions
        if isinstance(action, argparse._StoreTrueAction)
    }

    for arg_name in vars(args):
        env_var = ENV_PREFIX + arg_name.upper().replace("-", "_")
        if env_var in env:
            value = env[env_var]

            # Handle boolean flags
            if arg_name in arg_bools:
                value = value.lower() in ("true", "1", "yes", "y", "on")
            # Handle other types using the parser's type information
            elif arg_name in arg_types:
                try:
                    value = arg_types[arg_name](value)
                except (ValueError, TypeError) as e:
                    logger.warning(
                        f"Failed to convert environment variable {env_var}={value} "
                        f"to type {arg_types[arg_name]}: {str(e)}"
                    )
                    continue

            setattr(args, arg_name, value)

    return args


def _option_flag(dest: str) -> str:
    return "--" + dest.replace("_", "-")


def _select_one(args, kind: str, options: Dict[str, Tuple[str, ...]]) -> str:
    """Return the single option group that is fully set.

    A group with only some of its options set is reported as incomplete.
    """
    selected = []
    for name, dests in options.items():
        present = [dest for dest in dests if str(getattr(args, dest, None) or "").strip()]
        if len(present) == len(dests):
            selected.append(name)
        elif present:
            missing = ", ".join(_option_flag(d) for d in dests if d not in present)
            raise ConfigurationError(f"Incomplete {kind} configuration: missing {missing}")

    if len(selected) != 1:
        choices = "; ".join(
            " and ".join(_option_flag(d) for d in dests) for dests in options.values()
        )
        found = ", ".join(selected) if selected else "none"
        raise ConfigurationError(
            f"Unable to detect the {kind} mechanism (found: {found}). "
            f"Configure exactly one of: {choices}"
        )
    return selected[0]


def validate_config(args) -> Tuple[str, str]:
    """Check that exactly one authenticator and one storage backend are configured.

    Returns:
        Tuple of (authenticator kind, storage kind)

    Raises:
        ConfigurationError: If the configuration is missing or ambiguous
    """
    auth_kind = _select_one(args, "authentication", AUTH_OPTIONS)
    storage_kind = _select_one(args, "storage", STORAGE_OPTIONS)
    if args.url_expiry <= 0:
        raise ConfigurationError("--url-expiry must be a positive number of seconds")
    if args.request_timeout <= 0:
        raise ConfigurationError("--request-timeout must be positive")
    if args.max_concurrency <= 0:
        raise ConfigurationError("--max-concurrency must be positive")
    return auth_kind, storage_kind


def load_users_file(path: str) -> Dict[str, str]:
    """Load a username to password mapping from a YAML or JSON file."""
    try:
        users = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to read users file {path}: {e}") from e
    if not isinstance(users, dict) or not users:
        raise ConfigurationError(f"Users file {path} must contain a non-empty mapping")
    return {str(name): str(password) for name, password in users.items()}


def create_authenticator(args, kind: str) -> Authenticator:
    """Create the configured authenticator."""
    if kind == "dictionary":
        return DictionaryAuthenticator({args.username: args.password})
    if kind == "users-file":
        return DictionaryAuthenticator(load_users_file(args.users_file))
    if kind == "github":
        return GitHubAuthenticator(
            args.github_organisation,
            args.github_repository,
            timeout=args.request_timeout,
        )
    if kind == "bitbucket":
        return BitBucketAuthenticator(
            args.bitbucket_workspace,
            args.bitbucket_repository,
            timeout=args.request_timeout,
        )
    raise ConfigurationError(f"Unknown authenticator: {kind}")


def create_storage(args, kind: str) -> BlobAdapter:
    """Create the configured storage adapter."""
    if kind == "s3":
        if bool(args.s3_access_key) != bool(args.s3_access_secret):
            raise ConfigurationError(
                "Incomplete S3 configuration: set both --s3-access-key and --s3-access-secret"
            )
        factory = create_s3_client_factory(
            region_name=args.s3_region,
            endpoint_url=args.s3_endpoint_url,
            access_key_id=args.s3_access_key,
            secret_access_key=args.s3_access_secret,
            acceleration=args.s3_acceleration,
            read_timeout=args.request_timeout,
        )
        return S3BlobAdapter(factory, args.s3_bucket)
    if kind == "azure":
        return AzureBlobAdapter.from_connection_string(
            args.azure_connection_string,
            args.azure_container,
            read_timeout=args.request_timeout,
        )
    raise ConfigurationError(f"Unknown storage backend: {kind}")


def norm_url(base_path: str, url: str) -> str:
    """Join the base path and a route path."""
    return base_path.rstrip("/") + url


def create_application(args) -> FastAPI:
    """Create an LFS server application.

    Raises:
        ConfigurationError: If the configuration is missing or ambiguous
    """
    if args.from_env:
        logger.info("Loading arguments from environment variables")
        _args = get_args_from_env()
        # copy the _args to args
        for key, value in _args.__dict__.items():
            setattr(args, key, value)

    auth_kind, storage_kind = validate_config(args)
    authenticator = create_authenticator(args, auth_kind)
    storage = create_storage(args, storage_kind)
    logger.info(f"Using {auth_kind} authentication and {storage_kind} storage")

    processor = BatchProcessor(
        authenticator,
        storage,
        expires_in=args.url_expiry,
        key_prefix=args.key_prefix,
        timeout=args.request_timeout,
        max_concurrency=args.max_concurrency,
    )
    return create_lfs_application(processor, base_path=args.base_path)


def create_lfs_application(processor: BatchProcessor, base_path: str = "/") -> FastAPI:
    """Create the FastAPI application serving a batch processor."""
    application = FastAPI(
        title="lfshost",
        description="Git LFS batch API server",
        version=__version__,
    )
    application.state.processor = processor

    @application.exception_handler(StarletteHTTPException)
    async def lfs_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return lfs_error_response(
            exc.status_code, str(exc.detail), getattr(exc, "headers", None)
        )

    application.include_router(
        create_lfs_router(processor), prefix=base_path.rstrip("/")
    )

    @application.get(norm_url(base_path, "/health/liveness"))
    async def liveness() -> JSONResponse:
        """Used for liveness probe."""
        return JSONResponse({"status": "OK"})

    @application.get(norm_url(base_path, "/health/readiness"))
    async def readiness() -> JSONResponse:
        """Used for readiness probe."""
        return JSONResponse(
            {
                "status": "OK",
                "detail": {
                    "authenticator": processor.authenticator.name,
                    "storage": processor.storage.name,
                },
            }
        )

    @application.get(norm_url(base_path, "/metrics"))
    async def metrics() -> Response:
        """Expose Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return application
