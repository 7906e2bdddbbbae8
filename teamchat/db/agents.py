"""Agent, channel membership and agent tool lookups."""

from typing import Any

from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import AgentProfile, ChannelAgent
from teamchat.db.supabase_client import get_supabase

logger = get_logger(__name__)


def get_agent(agent_id: str) -> AgentProfile | None:
    """
    Load an agent with its configuration.

    Args:
        agent_id: Agent id

    Returns:
        AgentProfile, or None when the agent does not exist
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table("agents")
            .select("id, name, nickname, description, role, configuration, company_id")
            .eq("id", agent_id)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to fetch agent {agent_id}: {e}", extra={"agent_id": agent_id})
        raise

    if not response.data:
        return None
    return AgentProfile.from_row(response.data[0])


def list_channel_agents(channel_id: str) -> list[ChannelAgent]:
    """
    Agents attached to a channel, for mention resolution.

    Args:
        channel_id: Channel id

    Returns:
        List of ChannelAgent (id, name, nickname)
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table("channel_agents")
            .select("agent_id, agents(id, name, nickname)")
            .eq("channel_id", channel_id)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to list channel agents for {channel_id}: {e}")
        raise

    agents = []
    for row in response.data or []:
        agent = row.get("agents")
        if isinstance(agent, list):
            agent = agent[0] if agent else None
        if not agent:
            continue
        agents.append(
            ChannelAgent(id=str(agent["id"]), name=agent.get("name") or "", nickname=agent.get("nickname"))
        )
    return agents


def is_channel_member(channel_id: str, user_id: str) -> bool:
    """True when the user belongs to the channel."""
    supabase = get_supabase()

    try:
        response = (
            supabase.table("channel_members")
            .select("user_id")
            .eq("channel_id", channel_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        logger.error(f"Failed to check channel membership: {e}", extra={"channel_id": channel_id})
        raise

    return bool(response.data)


def list_agent_tools(agent_id: str) -> list[dict[str, Any]]:
    """
    Enabled tools of an agent.

    Returns:
        List of {"id", "name", "display_name", "description", "schema"} dicts
    """
    supabase = get_supabase()

    try:
        response = (
            supabase.table("agent_tools")
            .select(
                "tool_id, is_enabled, configuration, "
                "tools(id, name, display_name, description, tool_type, schema_definition)"
            )
            .eq("agent_id", agent_id)
            .eq("is_enabled", True)
            .execute()
        )
    except Exception as e:
        logger.warning(f"Failed to load tools for agent {agent_id}: {e}", extra={"agent_id": agent_id})
        return []

    tools = []
    for row in response.data or []:
        tool = row.get("tools")
        if isinstance(tool, list):
            tool = tool[0] if tool else None
        if not tool or not tool.get("name"):
            continue
        tools.append(
            {
                "id": str(tool.get("id") or row.get("tool_id")),
                "name": tool["name"],
                "display_name": tool.get("display_name"),
                "description": tool.get("description") or "",
                "schema": tool.get("schema_definition"),
            }
        )
    return tools
