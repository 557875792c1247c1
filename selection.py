"""
Modifier Selection Module
=========================
Gatekeeper for modifier choices on a drop's menu.

Selections are plain mappings of option ids:

    {item_id: {group_id: [option_id, ...]}}

- ModifierSelection: interactive builder, refuses picks past maxSelect
- validate_selections: submission-time gate, no side effects
- freeze_selections: order-time snapshot with captured names and prices
"""

import logging
from typing import Dict, List, Any, Optional

from catalog import Drop, ModifierGroup
from errors import IncompleteSelection


logger = logging.getLogger(__name__)


Selections = Dict[str, Dict[str, List[str]]]


# ============================================================================
# INTERACTIVE BUILDER
# ============================================================================

class ModifierSelection:
    """
    Mutable selection state for one drop.

    Enforces maxSelect at pick time: a single-choice group swaps the pick,
    a multi-choice group refuses additional picks once full.
    """

    def __init__(self, drop: Drop, initial: Optional[Selections] = None):
        self.drop = drop
        self._picks: Selections = {}

        for item_id, groups in (initial or {}).items():
            for group_id, option_ids in groups.items():
                for option_id in option_ids:
                    self.toggle(item_id, group_id, option_id)

    def _group(self, item_id: str, group_id: str) -> ModifierGroup:
        item = self.drop.get_menu_item(item_id)
        group = item.get_group(group_id) if item else None

        if group is None:
            raise IncompleteSelection(
                f"Unknown modifier group {group_id!r} on item {item_id!r}.",
                {"item_id": item_id, "group_id": group_id, "reason": "unknown_group"}
            )

        return group

    def toggle(self, item_id: str, group_id: str, option_id: str) -> bool:
        """
        Add or remove an option.

        Returns:
            True if the selection changed, False if the pick was refused
        """
        group = self._group(item_id, group_id)

        if group.get_option(option_id) is None:
            raise IncompleteSelection(
                f"Unknown option {option_id!r} in group {group.name!r}.",
                {
                    "item_id": item_id,
                    "group_id": group_id,
                    "option_id": option_id,
                    "reason": "unknown_option",
                }
            )

        current = self._picks.setdefault(item_id, {}).setdefault(group_id, [])

        if option_id in current:
            current.remove(option_id)
            return True

        if group.max_select == 1:
            current[:] = [option_id]
            return True

        if len(current) >= group.max_select:
            logger.debug(
                f"Refused pick {option_id} in {item_id}/{group_id}: "
                f"cap {group.max_select} reached"
            )
            return False

        current.append(option_id)
        return True

    def selected(self, item_id: str, group_id: str) -> List[str]:
        return list(self._picks.get(item_id, {}).get(group_id, []))

    def as_dict(self) -> Selections:
        return {
            item_id: {group_id: list(ids) for group_id, ids in groups.items()}
            for item_id, groups in self._picks.items()
        }


# ============================================================================
# SUBMISSION GATE
# ============================================================================

def validate_selections(drop: Drop, selections: Optional[Selections]) -> None:
    """
    Check every modifier group on every menu item against its bounds.

    Args:
        drop: Drop whose menu defines the groups
        selections: {item_id: {group_id: [option_id, ...]}}

    Raises:
        IncompleteSelection: Naming the first offending item and group
    """
    selections = selections or {}

    if not isinstance(selections, dict):
        raise IncompleteSelection(
            "Selections must map item ids to modifier groups.",
            {"reason": "malformed"}
        )

    for item_id, groups in selections.items():
        item = drop.get_menu_item(item_id)
        if item is None:
            raise IncompleteSelection(
                f"Unknown menu item {item_id!r}.",
                {"item_id": item_id, "reason": "unknown_item"}
            )
        if not isinstance(groups, dict):
            raise IncompleteSelection(
                f"Selections for {item.name!r} must map group ids to options.",
                {"item_id": item_id, "reason": "malformed"}
            )
        for group_id in groups:
            if item.get_group(group_id) is None:
                raise IncompleteSelection(
                    f"Unknown modifier group {group_id!r} on {item.name!r}.",
                    {"item_id": item_id, "group_id": group_id, "reason": "unknown_group"}
                )

    for item in drop.menu_items:
        item_picks = selections.get(item.id) or {}

        for group in item.modifier_groups:
            picks = item_picks.get(group.id) or []
            details = {"item_id": item.id, "group_id": group.id}

            if not isinstance(picks, list):
                raise IncompleteSelection(
                    f"Selections for {group.name!r} must be a list of option ids.",
                    {**details, "reason": "malformed"}
                )

            if len(set(picks)) != len(picks):
                raise IncompleteSelection(
                    f"Duplicate option picked for {group.name!r} in {item.name!r}.",
                    {**details, "reason": "duplicate_option"}
                )

            for option_id in picks:
                if group.get_option(option_id) is None:
                    raise IncompleteSelection(
                        f"Unknown option {option_id!r} for {group.name!r}.",
                        {**details, "option_id": option_id, "reason": "unknown_option"}
                    )

            if group.min_select > 0 and len(picks) < group.min_select:
                raise IncompleteSelection(
                    f"Please select at least {group.min_select} option(s) "
                    f"for \"{group.name}\" in \"{item.name}\".",
                    {**details, "min_select": group.min_select, "selected": len(picks),
                     "reason": "below_minimum"}
                )

            if len(picks) > group.max_select:
                raise IncompleteSelection(
                    f"At most {group.max_select} option(s) allowed "
                    f"for \"{group.name}\" in \"{item.name}\".",
                    {**details, "max_select": group.max_select, "selected": len(picks),
                     "reason": "above_maximum"}
                )


# ============================================================================
# ORDER-TIME SNAPSHOT
# ============================================================================

def freeze_selections(drop: Drop, selections: Optional[Selections]) -> List[Dict[str, Any]]:
    """
    Capture names and prices of the chosen options as they are right now.

    Assumes validate_selections has passed.

    Returns:
        One entry per menu item, in menu order
    """
    selections = selections or {}
    frozen = []

    for item in drop.menu_items:
        item_picks = selections.get(item.id) or {}
        groups = []

        for group in item.modifier_groups:
            picks = item_picks.get(group.id) or []
            if not picks:
                continue
            groups.append({
                "groupId": group.id,
                "groupName": group.name,
                "options": [group.get_option(option_id).to_dict() for option_id in picks],
            })

        frozen.append({
            "itemId": item.id,
            "name": item.name,
            "basePrice": item.base_price,
            "selectedModifiers": groups,
        })

    return frozen
