"""Poll construction and the single-vote reconcile step."""

from typing import Any, Dict, List, Mapping, Sequence

from chatsync import config
from chatsync.models.message import PollDocument
from chatsync.utils.errors import ChatValidationError


def build_poll(question: str, options: Sequence[str]) -> PollDocument:
    question = (question or "").strip()
    if not question:
        raise ChatValidationError("Poll question cannot be empty")
    cleaned = [str(o).strip() for o in options]
    if any(not o for o in cleaned):
        raise ChatValidationError("Poll options cannot be empty")
    if len(cleaned) < 2:
        raise ChatValidationError("A poll needs at least two options")
    if len(cleaned) > config.MAX_POLL_OPTIONS:
        raise ChatValidationError(f"A poll can have at most {config.MAX_POLL_OPTIONS} options")
    if len({o.lower() for o in cleaned}) != len(cleaned):
        raise ChatValidationError("Poll options must be distinct")
    return {
        "question": question,
        "options": cleaned,
        "votes": {str(i): [] for i in range(len(cleaned))},
        "total_votes": 0,
    }


def apply_vote(poll: Mapping[str, Any], option_index: int, user_id: str) -> PollDocument:
    """Return a new poll with ``user_id`` moved to ``option_index``.

    The user is first removed from whichever option holds them. Voting again
    for the option they already held is a toggle-off. The total is recomputed
    from the option lists rather than adjusted, so a poll that somehow drifted
    heals on the next vote.
    """
    options: List[str] = list(poll.get("options") or [])
    if not isinstance(option_index, int) or isinstance(option_index, bool):
        raise ChatValidationError("Option index must be an integer")
    if option_index < 0 or option_index >= len(options):
        raise ChatValidationError(f"Option index {option_index} is out of range")
    if not user_id:
        raise ChatValidationError("Voter id cannot be empty")

    current: Mapping[str, Any] = poll.get("votes") or {}
    votes: Dict[str, List[str]] = {}
    previous = None
    for i in range(len(options)):
        voters = list(current.get(str(i)) or [])
        if user_id in voters:
            previous = i
            voters = [v for v in voters if v != user_id]
        votes[str(i)] = voters

    if previous != option_index:
        votes[str(option_index)].append(user_id)

    return {
        "question": poll.get("question", ""),
        "options": options,
        "votes": votes,
        "total_votes": sum(len(v) for v in votes.values()),
    }


def voted_option(poll: Mapping[str, Any], user_id: str) -> int | None:
    for key, voters in (poll.get("votes") or {}).items():
        if user_id in (voters or []):
            return int(key)
    return None
