"""createEmojiVote and getVoteResults tools - reaction-based polls.

A vote is an ordinary rendered message listing one emoji per option. The
bot seeds one reaction per option so users can vote with a single click;
results are read back from the message's reactions, minus the seed.
Votes are kept in thread metadata under ``votes``, keyed by message ts.
"""

from __future__ import annotations

import logging
from typing import Any

from bridge_core import dsl
from bridge_core.json_repair import loads_lenient
from bridge_core.schema import ToolContext, ToolResult

from .add_reaction import normalize_emoji
from .registry import ToolRegistry
from .rendering import render_message, send_rendered

logger = logging.getLogger(__name__)

TOOL_NAME = "createEmojiVote"
DESCRIPTION = "Post a poll where users vote by reacting with the emoji next to an option."
PARAMETERS: dict[str, Any] = {
    "text": {"type": "string", "description": "The question; block syntax such as #header: is allowed"},
    "options": {
        "type": ["array", "string"],
        "description": "Options as a list of {text, emoji} or plain strings; emoji defaults to :one:, :two:, ...",
    },
    "color": {"type": "string", "description": "Accent color name or #RRGGBB"},
}
REQUIRED = ["text", "options"]

RESULTS_TOOL_NAME = "getVoteResults"
RESULTS_DESCRIPTION = "Count the votes on a poll created with createEmojiVote."
RESULTS_PARAMETERS: dict[str, Any] = {
    "voteId": {"type": "string", "description": "Vote id returned by createEmojiVote"},
    "messageTs": {"type": "string", "description": "Timestamp of the vote message (alternative to voteId)"},
}

VOTES_KEY = "votes"
NUMBER_EMOJI = ("one", "two", "three", "four", "five", "six", "seven", "eight", "nine", "keycap_ten")
MAX_OPTIONS = len(NUMBER_EMOJI)
VOTE_INSTRUCTIONS = "React with the emoji next to your preferred option to vote."


def parse_options(value: Any) -> list[dict[str, str]]:
    """Options as ``{"text", "emoji"}`` dicts with unique emoji names (no colons)."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("[", "{"):
            try:
                value = loads_lenient(stripped)
            except ValueError:
                value = dsl.split_top_level(stripped.strip("[]"))
        else:
            value = dsl.split_top_level(stripped)
    if isinstance(value, dict):
        value = [value]

    options: list[dict[str, str]] = []
    used: set[str] = set()
    for item in value if isinstance(value, list) else []:
        if isinstance(item, dict):
            text = str(item.get("text") or item.get("label") or "").strip()
            emoji = normalize_emoji(item.get("emoji"))
        else:
            text, emoji = str(item).strip(), []
        if not text:
            continue
        name = emoji[0] if emoji and emoji[0] not in used else None
        if name is None:
            name = next((n for n in NUMBER_EMOJI if n not in used), None)
        if name is None:
            logger.warning("Dropping vote option %r: no emoji left", text)
            continue
        used.add(name)
        options.append({"text": text, "emoji": name})
    return options[:MAX_OPTIONS]


def vote_text(question: str, options: list[dict[str, str]]) -> str:
    lines = "\n".join(f":{o['emoji']}: {o['text']}" for o in options)
    return f"{question}\n\n#section: *Options:*\n{lines}\n\n#context: {VOTE_INSTRUCTIONS}"


def _votes(ctx: ToolContext) -> dict[str, dict[str, Any]]:
    return dict(ctx.thread.get_metadata(VOTES_KEY) or {})


async def _create_handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    question = str(payload.get("text") or "").strip()
    options = parse_options(payload.get("options"))
    if not question:
        return ToolResult(ok=False, error="missing_text")
    if not options:
        return ToolResult(ok=False, error="missing_options")
    if not ctx.channel_id:
        return ToolResult(ok=False, error="missing_channel")

    rendered = await render_message(ctx, vote_text(question, options), color=payload.get("color"))
    data = await send_rendered(ctx, rendered, question)
    ts, channel = data["ts"], data["channel"]

    seeded = []
    for option in options:
        if await ctx.platform.try_add_reaction(channel, ts, option["emoji"]):
            seeded.append(option["emoji"])

    votes = _votes(ctx)
    vote_id = f"vote_{len(votes) + 1}"
    votes[ts] = {"voteId": vote_id, "text": question, "options": options, "channel": channel, "seeded": seeded}
    ctx.thread.set_metadata(VOTES_KEY, votes)
    logger.info("Created vote %s on %s with %d options", vote_id, ts, len(options))

    data.update({"voteId": vote_id, "options": options})
    return ToolResult(ok=True, data=data)


def _find_vote(votes: dict[str, dict[str, Any]], vote_id: str, message_ts: str) -> tuple[str, dict[str, Any] | None]:
    if message_ts:
        return message_ts, votes.get(message_ts)
    for ts, vote in votes.items():
        if vote.get("voteId") == vote_id:
            return ts, vote
    return "", None


async def _results_handler(payload: dict[str, Any], ctx: ToolContext) -> ToolResult:
    vote_id = str(payload.get("voteId") or "").strip()
    message_ts = str(payload.get("messageTs") or "").strip()
    if not vote_id and not message_ts:
        return ToolResult(ok=False, error="missing_vote_id_or_message_ts")

    ts, vote = _find_vote(_votes(ctx), vote_id, message_ts)
    if not ts:
        return ToolResult(ok=False, error=f"vote_not_found: {vote_id}")
    channel = (vote or {}).get("channel") or ctx.channel_id
    if not channel:
        return ToolResult(ok=False, error="missing_channel")

    message = await ctx.platform.get_reactions(channel, ts)
    reactions = {r.get("name"): r for r in message.get("reactions") or []}
    bot_user = getattr(ctx.platform, "bot_user_id", None)

    def _count(reaction: dict[str, Any] | None, seeded: bool) -> tuple[int, list[str]]:
        if not reaction:
            return 0, []
        users = [u for u in reaction.get("users") or [] if u != bot_user]
        seed = 1 if seeded or (bot_user and bot_user in (reaction.get("users") or [])) else 0
        return max(int(reaction.get("count") or 0) - seed, 0), users

    results = []
    if vote:
        seeded = set(vote.get("seeded") or [])
        for option in vote["options"]:
            count, users = _count(reactions.get(option["emoji"]), option["emoji"] in seeded)
            results.append({"text": option["text"], "emoji": option["emoji"], "count": count, "users": users})
    else:
        for name, reaction in reactions.items():
            count, users = _count(reaction, False)
            results.append({"emoji": name, "count": count, "users": users})

    return ToolResult(ok=True, data={
        "voteId": (vote or {}).get("voteId"),
        "messageTs": ts,
        "question": (vote or {}).get("text"),
        "results": results,
        "totalVotes": sum(r["count"] for r in results),
    })


def register(registry: ToolRegistry) -> None:
    """Register createEmojiVote and getVoteResults with the registry."""
    registry.register(TOOL_NAME, DESCRIPTION, _create_handler, PARAMETERS, True, required=REQUIRED)
    registry.register(
        RESULTS_TOOL_NAME, RESULTS_DESCRIPTION, _results_handler, RESULTS_PARAMETERS, True, cache_results=False
    )
