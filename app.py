"""Command line front end for the TripSheet sync engine."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Optional

import db
from settings import SYNC_SETTINGS_PATH, load_sync_settings, save_sync_settings
from tripsync.errors import SyncError
from tripsync.logging_config import configure_logging
from tripsync.places import PlacesError
from tripsync.sheets_client import SheetsClientError
from tripsync.sync_service import SyncService

_FAILURES = (SyncError, SheetsClientError, PlacesError, db.CacheStoreError)


def _build_service() -> SyncService:
    settings = load_sync_settings()
    db.set_database_path(settings.db_path)
    return SyncService(settings)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True))


def _parse_updates(pairs: list[str]) -> dict[str, str]:
    updates: dict[str, str] = {}
    for pair in pairs:
        field, sep, value = pair.partition("=")
        if not sep or not field.strip():
            raise ValueError(f"Expected FIELD=VALUE, got {pair!r}")
        updates[field.strip()] = value
    return updates


def command_connect(args: argparse.Namespace) -> int:
    profile = _build_service().connect(args.owner, args.spreadsheet, args.refresh_token)
    print(f"Connected {profile.owner_id} to {profile.spreadsheet_id}")
    return 0


def command_sync(args: argparse.Namespace) -> int:
    result = _build_service().sync_locations(args.owner)
    _print_json(result.to_dict())
    if result.remaining_count:
        print(f"{result.remaining_count} locations still need details; run sync again.", file=sys.stderr)
    return 0


def command_locations(args: argparse.Namespace) -> int:
    _print_json(_build_service().get_locations(args.owner))
    return 0


def command_update(args: argparse.Namespace) -> int:
    try:
        updates = _parse_updates(args.fields)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    merged = _build_service().update_location(args.owner, args.location_id, updates)
    if merged is None:
        print("Sheet updated; no cached record to merge. Run sync to refresh.")
    else:
        _print_json(merged)
    return 0


def command_add(args: argparse.Namespace) -> int:
    _print_json(_build_service().add_location_from_url(args.owner, args.url))
    return 0


def command_itinerary_sync(args: argparse.Namespace) -> int:
    _print_json(_build_service().sync_itinerary(args.owner))
    return 0


def command_itinerary(args: argparse.Namespace) -> int:
    service = _build_service()
    if args.replace is None:
        _print_json(service.get_itinerary(args.owner))
        return 0
    with open(args.replace, "r", encoding="utf-8") as handle:
        items = json.load(handle)
    if not isinstance(items, list):
        print("Error: itinerary file must hold a JSON list", file=sys.stderr)
        return 2
    _print_json(service.update_itinerary(args.owner, items))
    return 0


def command_disconnect(args: argparse.Namespace) -> int:
    _build_service().disconnect(args.owner)
    print(f"Disconnected {args.owner}")
    return 0


def command_share(args: argparse.Namespace) -> int:
    service = _build_service()
    if args.disable:
        service.disable_sharing(args.owner)
        print(f"Sharing disabled for {args.owner}")
    else:
        print(service.enable_sharing(args.owner))
    return 0


def command_shared(args: argparse.Namespace) -> int:
    _print_json(_build_service().get_shared_trip(args.slug))
    return 0


def command_collaborators(args: argparse.Namespace) -> int:
    service = _build_service()
    if args.add:
        if not service.invite_collaborator(args.owner, args.add):
            print(f"{args.add} was already invited", file=sys.stderr)
    if args.remove:
        if not service.remove_collaborator(args.owner, args.remove):
            print(f"{args.remove} was not a collaborator", file=sys.stderr)
    _print_json(service.list_collaborators(args.owner))
    return 0


def command_shared_with(args: argparse.Namespace) -> int:
    _print_json(_build_service().shared_trips_for(args.email))
    return 0


_CONFIGURABLE = (
    ("google_client_id", str),
    ("google_client_secret", str),
    ("maps_api_key", str),
    ("locations_tab", str),
    ("itinerary_tab", str),
    ("enrichment_item_cap", int),
    ("enrichment_budget_seconds", float),
    ("default_country", str),
    ("db_path", str),
)


def command_configure(args: argparse.Namespace) -> int:
    settings = load_sync_settings(args.settings_file)
    changed = []
    for name, _ in _CONFIGURABLE:
        value = getattr(args, name)
        if value is not None:
            setattr(settings, name, value)
            changed.append(name)
    if changed:
        save_sync_settings(settings, args.settings_file)
        print(f"Saved {', '.join(changed)} to {args.settings_file}")
    _print_json(settings.to_json())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TripSheet spreadsheet sync tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _owner_command(name: str, help_text: str, func) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("owner", help="Owner id the sheet and cache belong to")
        sub.set_defaults(func=func)
        return sub

    connect_parser = _owner_command("connect", "Link an owner to a spreadsheet", command_connect)
    connect_parser.add_argument("spreadsheet", help="Spreadsheet id or URL")
    connect_parser.add_argument("--refresh-token", help="Google OAuth refresh token")

    _owner_command("sync", "Sync the Locations tab into the cache", command_sync)
    _owner_command("locations", "Print the cached locations", command_locations)

    update_parser = _owner_command("update", "Edit fields of one location", command_update)
    update_parser.add_argument("location_id", help="Location id such as loc-3")
    update_parser.add_argument("fields", nargs="+", metavar="FIELD=VALUE", help="e.g. city=Kyoto")

    add_parser = _owner_command("add", "Add a location from a Google Maps link", command_add)
    add_parser.add_argument("url", help="Google Maps link")

    _owner_command("itinerary-sync", "Sync the Itinerary tab into the cache", command_itinerary_sync)

    itinerary_parser = _owner_command("itinerary", "Print or replace the itinerary", command_itinerary)
    itinerary_parser.add_argument(
        "--replace",
        metavar="FILE",
        help="JSON file with the complete itinerary to write",
    )

    _owner_command("disconnect", "Unlink the spreadsheet and drop cached data", command_disconnect)

    share_parser = _owner_command("share", "Print the public share link slug", command_share)
    share_parser.add_argument("--disable", action="store_true", help="Withdraw the public link")

    shared_parser = subparsers.add_parser("shared", help="Print the trip behind a share slug")
    shared_parser.add_argument("slug")
    shared_parser.set_defaults(func=command_shared)

    collaborators_parser = _owner_command(
        "collaborators", "List, invite or remove collaborators", command_collaborators
    )
    collaborators_parser.add_argument("--add", metavar="EMAIL", help="Invite a collaborator")
    collaborators_parser.add_argument("--remove", metavar="EMAIL", help="Remove a collaborator")

    shared_with_parser = subparsers.add_parser("shared-with", help="List owners who invited an email")
    shared_with_parser.add_argument("email")
    shared_with_parser.set_defaults(func=command_shared_with)

    configure_parser = subparsers.add_parser("configure", help="Show or change stored settings")
    configure_parser.add_argument("--settings-file", default=SYNC_SETTINGS_PATH, help=argparse.SUPPRESS)
    for name, kind in _CONFIGURABLE:
        configure_parser.add_argument(f"--{name.replace('_', '-')}", dest=name, type=kind)
    configure_parser.set_defaults(func=command_configure)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except _FAILURES as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
