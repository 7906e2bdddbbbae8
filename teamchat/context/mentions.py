"""@mention detection and resolution against a channel's agents."""

import re
from typing import Callable

from teamchat.core.config import get_settings
from teamchat.core.schemas_chat import AgentReference, ChannelAgent

# A mention starts at the beginning of the text or after whitespace and ends
# where whitespace precedes more text, at another "@", or at the end.
MENTION_PATTERN = re.compile(r"(?:^|(?<=\s))@([^@\s][^@\n\r]*?)(?=\s+[^@\s]|\s*\Z|\s*@|[\n\r])")


def make_email_fragment_check(suffixes: list[str]) -> Callable[[str], bool]:
    """Build the email heuristic: a token with a "." ending in a known TLD."""
    if not suffixes:
        return lambda token: False

    alternatives = "|".join(re.escape(s.lower()) for s in suffixes)
    tld = re.compile(rf"\.({alternatives})$", re.IGNORECASE)
    return lambda token: "." in token and bool(tld.search(token))


class MentionParser:
    """
    Resolves @tokens in message text to channel agents.

    Resolution order per token: exact nickname, exact name, nickname
    containing the token, name containing the token (all case-insensitive);
    the first agent matching the earliest rule wins. Output is ordered by
    position in the text and deduplicated by agent id, first occurrence kept.
    """

    def __init__(
        self,
        email_suffixes: list[str] | None = None,
        is_email_fragment: Callable[[str], bool] | None = None,
    ):
        if is_email_fragment is None:
            if email_suffixes is None:
                email_suffixes = get_settings().email_suffixes
            is_email_fragment = make_email_fragment_check(email_suffixes)
        self.is_email_fragment = is_email_fragment

    @staticmethod
    def resolve(token: str, agents: list[ChannelAgent]) -> ChannelAgent | None:
        """Find the agent a single token refers to."""
        needle = token.lower()
        rules: list[Callable[[ChannelAgent], bool]] = [
            lambda a: bool(a.nickname) and a.nickname.lower() == needle,
            lambda a: a.name.lower() == needle,
            lambda a: bool(a.nickname) and needle in a.nickname.lower(),
            lambda a: needle in a.name.lower(),
        ]
        for rule in rules:
            for agent in agents:
                if rule(agent):
                    return agent
        return None

    def parse(self, text: str, agents: list[ChannelAgent]) -> list[AgentReference]:
        """
        Ordered, deduplicated agent references mentioned in the text.

        Args:
            text: Raw message text
            agents: Agents attached to the channel

        Returns:
            AgentReference list; the first entry is the primary agent
        """
        if not text or not agents:
            return []

        references: list[AgentReference] = []
        seen: set[str] = set()

        for match in MENTION_PATTERN.finditer(text):
            token = match.group(1).strip()
            if not token or self.is_email_fragment(token):
                continue

            agent = self.resolve(token, agents)
            if agent is None or agent.id in seen:
                continue

            seen.add(agent.id)
            references.append(
                AgentReference(
                    agent_id=agent.id,
                    agent_name=agent.nickname or agent.name,
                    position=match.start(),
                )
            )

        return references


def detect_agent_mentions(text: str, agents: list[ChannelAgent]) -> list[AgentReference]:
    """Parse mentions with the configured email heuristic."""
    return MentionParser().parse(text, agents)
