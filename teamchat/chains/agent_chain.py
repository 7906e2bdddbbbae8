"""Multi-agent mention chains.

The primary (first mentioned) agent answers inside the request. Every later
agent runs in a background ``agent_chain`` job, strictly in mention order,
seeing the original message plus the answers of the agents before it.
A failing agent gets an error message at its chain index and the rest of
the chain is dropped.
"""

import asyncio
from typing import Any, Awaitable, Callable
from uuid import UUID

from teamchat.chains.agent_pipeline import (
    persist_agent_response,
    persist_error_response,
    process_agent_message,
)
from teamchat.core.background import get_job_runner
from teamchat.core.config import get_settings
from teamchat.core.errors import ChainStepError
from teamchat.core.logging import get_logger
from teamchat.core.schemas_chat import (
    AgentReference,
    AgentResponse,
    Attachment,
    MentionType,
    PriorResponse,
)
from teamchat.services.image_generation import is_image_request

logger = get_logger(__name__)

JOB_TYPE = "agent_chain"

AgentProcessor = Callable[..., Awaitable[AgentResponse]]


async def process_agent_chain(
    original_message: str,
    agent_chain: list[AgentReference],
    channel_id: str,
    attachments: list[Attachment] | None,
    parent_message_id: str,
    chain_index: int,
    previous_responses: list[PriorResponse],
    *,
    processor: AgentProcessor | None = None,
) -> dict[str, Any]:
    """
    Run the chained agents one after another.

    Args:
        original_message: The user's message text
        agent_chain: Agents still to run, in mention order
        channel_id: Channel the replies are written to
        attachments: Files sent with the original message
        parent_message_id: The original user message id
        chain_index: Index of the first agent in ``agent_chain``
        previous_responses: Answers of the agents that already ran
        processor: Per-agent pipeline (defaults to process_agent_message)

    Returns:
        Summary dict: processed message ids and the failed step, if any
    """
    processor = processor or process_agent_message
    prior = list(previous_responses)
    message_ids: list[str] = []

    for offset, reference in enumerate(agent_chain):
        index = chain_index + offset
        remaining = [r.agent_id for r in agent_chain[offset + 1:]]

        try:
            response = await processor(
                agent_id=reference.agent_id,
                message=original_message,
                channel_id=channel_id,
                attachments=attachments or [],
                previous_responses=list(prior),
                parent_message_id=parent_message_id,
                mention_type=MentionType.CHAIN_MENTION,
                chain_index=index,
                allow_image_tool=is_image_request(original_message),
            )
            message_id = await asyncio.to_thread(
                persist_agent_response,
                response,
                agent_id=reference.agent_id,
                channel_id=channel_id,
                parent_message_id=parent_message_id,
                mention_type=MentionType.CHAIN_MENTION,
                chain_index=index,
                agent_chain=remaining,
            )
        except Exception as e:
            step_error = ChainStepError(reference.agent_id, index, e)
            logger.error(
                f"Chain stopped: {step_error}",
                extra={"channel_id": channel_id, "agent_id": reference.agent_id, "chain_index": index},
            )
            error_id = await asyncio.to_thread(
                persist_error_response,
                step_error.user_message,
                agent_id=reference.agent_id,
                error_message=str(e),
                channel_id=channel_id,
                parent_message_id=parent_message_id,
                mention_type=MentionType.CHAIN_MENTION,
                chain_index=index,
                agent_chain=[],
            )
            message_ids.append(error_id)
            return {
                "message_ids": message_ids,
                "completed": offset,
                "failed_agent_id": reference.agent_id,
                "failed_chain_index": index,
                "skipped_agent_ids": remaining,
            }

        message_ids.append(message_id)
        prior.append(
            PriorResponse(
                agent_id=reference.agent_id,
                agent_name=reference.agent_name,
                content=response.response,
            )
        )

    logger.info(
        f"Chain finished with {len(message_ids)} chained repl(ies)",
        extra={"channel_id": channel_id, "message_id": parent_message_id},
    )
    return {
        "message_ids": message_ids,
        "completed": len(message_ids),
        "failed_agent_id": None,
        "failed_chain_index": None,
        "skipped_agent_ids": [],
    }


def start_chain(
    original_message: str,
    agent_chain: list[AgentReference],
    channel_id: str,
    attachments: list[Attachment] | None,
    parent_message_id: str,
    previous_responses: list[PriorResponse],
    chain_index: int = 1,
) -> UUID | None:
    """
    Submit the rest of a chain as a background job.

    Returns:
        Job id, or None when there is nothing left to run
    """
    if not agent_chain:
        return None

    async def handler() -> dict[str, Any]:
        return await process_agent_chain(
            original_message,
            agent_chain,
            channel_id,
            attachments,
            parent_message_id,
            chain_index,
            previous_responses,
        )

    job_id = get_job_runner().submit(
        JOB_TYPE,
        {
            "parent_message_id": parent_message_id,
            "agent_ids": [r.agent_id for r in agent_chain],
            "chain_index": chain_index,
        },
        handler,
        max_attempts=get_settings().CHAIN_MAX_ATTEMPTS,
        channel_id=channel_id,
    )
    logger.info(
        f"Queued chain job {job_id} for {len(agent_chain)} agent(s)",
        extra={"channel_id": channel_id, "job_id": str(job_id)},
    )
    return job_id
