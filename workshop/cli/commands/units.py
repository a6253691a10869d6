"""Unit commands for workshop CLI: create, list, show, delete, add steps."""

import json
from typing import TYPE_CHECKING

from workshop.types import Unit, format_datetime, unit_to_dict

if TYPE_CHECKING:
    from workshop import Workshop


def resolve_unit_id(w: "Workshop", partial_id: str) -> str:
    """Resolve a partial unit ID to full ID.

    Tries exact match first, then prefix match.
    Returns full ID or raises ValueError if not found or ambiguous.
    """
    if w.get_unit(partial_id):
        return partial_id

    matches = [u for u in w.list_units() if u.id.startswith(partial_id)]
    if len(matches) == 0:
        raise ValueError(f"Unit '{partial_id}' not found")
    if len(matches) == 1:
        return matches[0].id
    match_ids = [m.id[:8] for m in matches[:5]]
    suffix = "..." if len(matches) > 5 else ""
    raise ValueError(
        f"Ambiguous ID '{partial_id}' matches {len(matches)} units: {', '.join(match_ids)}{suffix}"
    )


def _sync_marker(unit: Unit) -> str:
    return "✓" if unit.sync_state.value == "synced" else "○"


def _print_unit(unit: Unit) -> None:
    print(f"{unit.name}  [{unit.id}]")
    if unit.game_system or unit.faction:
        print(f"  {unit.game_system}{' / ' + unit.faction if unit.faction else ''}")
    print(f"  Models: {unit.model_count}   Complete: {'yes' if unit.is_complete else 'no'}")
    if unit.description:
        print(f"  {unit.description}")
    print(f"  Sync: {unit.sync_state.value}   Updated: {format_datetime(unit.updated_at)}")
    if unit.steps:
        print()
        print(f"  Steps ({len(unit.steps)}):")
        for step in unit.steps:
            techniques = f" [{', '.join(step.technique)}]" if step.technique else ""
            photos = f" ({len(step.photos)} photos)" if step.photos else ""
            print(f"    {step.step_number}. {step.description}{techniques}{photos}")


def cmd_unit(args, w: "Workshop"):
    """Handle unit subcommands."""
    if args.unit_action == "add":
        unit = w.create_unit(
            args.name,
            game_system=args.system or "",
            faction=args.faction,
            description=args.description or "",
            model_count=args.models,
            is_public=args.public,
        )
        if args.json:
            print(json.dumps(unit_to_dict(unit), indent=2))
        else:
            print(f"✓ Unit created: {unit.id[:8]}... ({unit.name})")
            print("  Queued for sync")

    elif args.unit_action == "list":
        units = w.list_units()
        if args.json:
            print(json.dumps([unit_to_dict(u) for u in units], indent=2))
            return
        if not units:
            print("No units yet. Create one with `workshop unit add NAME`")
            return
        print(f"Units ({len(units)}):")
        for unit in units:
            system = f" - {unit.game_system}" if unit.game_system else ""
            print(
                f"  {_sync_marker(unit)} [{unit.id[:8]}] {unit.name}{system} "
                f"({len(unit.steps)} steps)"
            )

    elif args.unit_action == "show":
        unit = w.get_unit(resolve_unit_id(w, args.id))
        if args.json:
            print(json.dumps(unit_to_dict(unit), indent=2))
        else:
            _print_unit(unit)

    elif args.unit_action == "delete":
        unit_id = resolve_unit_id(w, args.id)
        if w.delete_unit(unit_id):
            print(f"✓ Unit {unit_id[:8]}... deleted (delete queued for sync)")
        else:
            print(f"✗ Unit {unit_id[:8]}... not found")

    elif args.unit_action == "step":
        unit = w.add_step(
            resolve_unit_id(w, args.id),
            args.description,
            technique=args.technique,
            other_tools=args.tool,
        )
        step = unit.steps[-1]
        if args.json:
            print(json.dumps(unit_to_dict(unit)["steps"][-1], indent=2))
        else:
            print(f"✓ Step {step.step_number} added to {unit.name}")
