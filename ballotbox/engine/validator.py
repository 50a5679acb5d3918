"""
Ballot shape validation.

Pure functions: nothing here touches a store, so validation runs before any
mutation and can be repeated freely.
"""
from typing import Iterable, Sequence, Tuple

from ballotbox.shared.errors import BallotRejection, BallotValidationError
from ballotbox.shared.models import Event, VoteMode


def validate_ballot(
    event: Event,
    event_item_ids: Iterable[str],
    chosen_item_ids: Sequence[str],
) -> Tuple[str, ...]:
    """
    Check a ballot against the event's vote mode and item set.

    Args:
        event: Event being voted on
        event_item_ids: Ids of every item in the event
        chosen_item_ids: Ids picked by the voter, in submission order

    Returns:
        tuple: The chosen ids, unchanged

    Raises:
        BallotValidationError: empty, duplicate_choice, unknown_item or wrong_count
    """
    chosen = tuple(chosen_item_ids or ())

    if not chosen:
        raise BallotValidationError(BallotRejection.EMPTY, "Select at least one item")

    if len(set(chosen)) != len(chosen):
        raise BallotValidationError(
            BallotRejection.DUPLICATE_CHOICE,
            "Each item can only be chosen once"
        )

    known = set(event_item_ids)
    unknown = [item_id for item_id in chosen if item_id not in known]
    if unknown:
        raise BallotValidationError(
            BallotRejection.UNKNOWN_ITEM,
            f"Unknown item(s) for this event: {', '.join(unknown)}"
        )

    # Multiple mode requires exactly number_of_choices, not "up to"
    required = event.required_choices
    if len(chosen) != required:
        if event.vote_mode == VoteMode.SINGLE:
            message = "Select exactly one item"
        else:
            message = f"Select exactly {required} items"
        raise BallotValidationError(BallotRejection.WRONG_COUNT, message)

    return chosen


class BallotValidator:
    """Object wrapper so the coordinator can take the validator as a collaborator."""

    def validate(
        self,
        event: Event,
        event_item_ids: Iterable[str],
        chosen_item_ids: Sequence[str],
    ) -> Tuple[str, ...]:
        return validate_ballot(event, event_item_ids, chosen_item_ids)
