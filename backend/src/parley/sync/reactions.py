from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .models import Reaction


@dataclass(slots=True)
class ReactionGroup:
    emoji: str
    count: int = 0
    user_ids: list[int] = field(default_factory=list)
    reacted: bool = False


def group_reactions(
    reactions: Iterable[Reaction], current_user_id: int | None = None
) -> list[ReactionGroup]:
    """Group flat reaction records by emoji.

    Groups keep the order in which each emoji first appears so that replacing
    the whole snapshot does not reshuffle the display.
    """

    groups: dict[str, ReactionGroup] = {}
    for reaction in reactions:
        group = groups.get(reaction.emoji)
        if group is None:
            group = groups[reaction.emoji] = ReactionGroup(emoji=reaction.emoji)
        if reaction.user_id in group.user_ids:
            continue
        group.user_ids.append(reaction.user_id)
        group.count += 1
        if reaction.user_id == current_user_id:
            group.reacted = True
    return list(groups.values())
