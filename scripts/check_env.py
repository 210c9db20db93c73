"""Validate the deployment ``.env`` and watch it for drift.

Loads ``AppSettings`` from the given file so malformed values (a negative
sync deadline, a Spotify batch above 50) fail here rather than in the API or
the cron job. Absent credentials are reported, not rejected: that provider is
skipped by the sync and served empty by the read API.

``record`` stores a SHA256 baseline of the file and ``verify`` compares
against it::

    python -m scripts.check_env record --env-file /srv/activity/.env \
        --hash-file /srv/activity/.env.sha256
    python -m scripts.check_env verify --env-file /srv/activity/.env \
        --hash-file /srv/activity/.env.sha256
"""

from __future__ import annotations

import argparse
import hashlib
import sys
from pathlib import Path

from pydantic import ValidationError

from activity_sync.core.config import AppSettings, IntegrationConfig, SyncSettings

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_RUNTIME_ERROR = 5


def _compute_hash(env_file: Path) -> str:
    """Return the SHA256 checksum for the target environment file."""
    return hashlib.sha256(env_file.read_bytes()).hexdigest()


def _validate_settings(env_file: Path) -> AppSettings:
    """Ensure settings can be loaded from the supplied env file."""
    # Nested groups read their own env file; point all three at the same one.
    return AppSettings(  # type: ignore[call-arg]
        _env_file=env_file,
        integrations=IntegrationConfig(_env_file=env_file),  # type: ignore[call-arg]
        sync=SyncSettings(_env_file=env_file),  # type: ignore[call-arg]
    )


def integration_report(settings: AppSettings) -> list[str]:
    """Describe which integrations and sync credentials are present."""
    integrations = settings.integrations
    lines = [
        "github: "
        + ("configured" if integrations.github_configured else "missing GITHUB_TOKEN"),
    ]
    missing_spotify = integrations.missing_spotify_fields()
    lines.append(
        "spotify: "
        + ("configured" if not missing_spotify else "missing " + ", ".join(missing_spotify))
    )
    sync_auth = [
        name
        for name, value in (
            ("CRON_SECRET", integrations.cron_secret),
            ("ADMIN_API_TOKEN", integrations.admin_api_token),
        )
        if value
    ]
    lines.append(
        "sync trigger: "
        + (", ".join(sync_auth) if sync_auth else "no CRON_SECRET or ADMIN_API_TOKEN set")
    )
    return lines


def _record_checksum(env_file: Path, hash_file: Path) -> int:
    """Persist the current checksum to ``hash_file``."""
    checksum = _compute_hash(env_file)
    hash_file.write_text(f"{checksum}\n", encoding="utf-8")
    print(f"Recorded checksum to {hash_file} ({checksum})")
    return EXIT_OK


def _verify_checksum(env_file: Path, hash_file: Path) -> int:
    """Compare the current checksum to the recorded baseline."""
    if not hash_file.exists():
        print(
            f"Expected checksum file {hash_file} is missing. "
            "Re-run with the 'record' command to establish a baseline.",
            file=sys.stderr,
        )
        return EXIT_RUNTIME_ERROR

    expected = hash_file.read_text(encoding="utf-8").strip()
    actual = _compute_hash(env_file)
    if expected == actual:
        print("Environment checksum OK.")
        return EXIT_OK

    print(
        "Environment checksum mismatch!\n"
        f"  expected: {expected}\n"
        f"  actual:   {actual}\n"
        "Investigate recent changes before restarting services.",
        file=sys.stderr,
    )
    return EXIT_CHECKSUM_ERROR


_COMMANDS = {
    "record": ("Validate settings and store the checksum baseline.", True),
    "verify": ("Validate settings and compare against the checksum baseline.", True),
    "check": ("Validate settings and print the integration report only.", False),
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate settings, report integrations and detect .env drift."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, (help_text, needs_hash) in _COMMANDS.items():
        subparser = subparsers.add_parser(name, help=help_text)
        subparser.add_argument(
            "--env-file",
            default=".env",
            type=Path,
            help="Environment file to validate (default: ./.env).",
        )
        if needs_hash:
            subparser.add_argument(
                "--hash-file",
                required=True,
                type=Path,
                help="Checksum baseline written by 'record' and read by 'verify'.",
            )
    return parser


def _load(env_file: Path) -> tuple[AppSettings | None, int]:
    if not env_file.exists():
        print(
            f"Environment file {env_file} does not exist. "
            "Create it or pass --env-file.",
            file=sys.stderr,
        )
        return None, EXIT_RUNTIME_ERROR
    try:
        return _validate_settings(env_file), EXIT_OK
    except ValidationError as exc:
        print(f"Settings validation failed:\n{exc.json(indent=2)}", file=sys.stderr)
        return None, EXIT_VALIDATION_ERROR
    except OSError as exc:
        print(f"Could not read {env_file}: {exc}", file=sys.stderr)
        return None, EXIT_RUNTIME_ERROR


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    env_file: Path = args.env_file

    settings, code = _load(env_file)
    if settings is None:
        return code

    for line in integration_report(settings):
        print(line)

    if args.command == "record":
        return _record_checksum(env_file, args.hash_file)
    if args.command == "verify":
        return _verify_checksum(env_file, args.hash_file)
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
