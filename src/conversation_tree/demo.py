"""
End-to-end walkthrough of a branching conversation.

Each step is an independent function so you can run and inspect individual
operations without executing the whole walkthrough. loguru logs the tree state
after every step.

Usage
-----
Run with the in-memory store against the model configured in the environment:

    CONVERSATION_TREE_LLM_API_KEY=sk-... python -m conversation_tree.demo

Persist to SQLite instead (the database URL comes from
CONVERSATION_TREE_DATABASE_URL):

    STORE=sql python -m conversation_tree.demo

Point the gateway at another OpenAI-compatible server and model list:

    CONVERSATION_TREE_LLM_BASE_URL=http://localhost:11434/v1 \\
    CONVERSATION_TREE_LLM_MODELS='["mistral-nemo:12b"]' python -m conversation_tree.demo

Steps at a glance
-----------------
1  build_controller()         Wire stores, assembler, memory and LLM into the facade.
2  step2_first_turn()         Create a conversation and stream the first answer.
3  step3_regenerate()         Answer the same question again as a sibling branch.
4  step4_switch_back()        Display the first answer again.
5  step5_edit_and_regenerate() Edit the question in place and answer it anew.
"""

import asyncio
import os
import sys

from loguru import logger

from conversation_tree.conversation_database.context import ContextAssembler
from conversation_tree.conversation_database.controller import (
    ClientConversation,
    ConversationTreeController,
    MessageInput,
)
from conversation_tree.conversation_database.data_models.conversation import ConversationDatabase
from conversation_tree.conversation_database.data_models.message import MessageDatabase
from conversation_tree.conversation_database.in_memory import InMemoryConversationDatabase, InMemoryMessageDatabase
from conversation_tree.conversation_database.sql import (
    SQLConversationDatabase,
    SQLMessageDatabase,
    create_engine,
    create_session_factory,
    init_db,
)
from conversation_tree.llms.openai import OpenAILLM
from conversation_tree.memory.in_memory import InMemoryMemoryStore
from conversation_tree.settings import ConversationTreeSettings, settings

USER_ID = "demo-user"
SYSTEM_PROMPT = "You are a concise assistant. Answer in at most three sentences."
QUESTION = "Why do ships float?"
EDITED_QUESTION = "Why do steel ships float although steel is denser than water?"


async def build_stores(store: str, settings: ConversationTreeSettings) -> tuple[ConversationDatabase, MessageDatabase]:
    match store:
        case "memory":
            return InMemoryConversationDatabase(), InMemoryMessageDatabase()
        case "sql":
            engine = create_engine(settings.database_url)
            await init_db(engine)
            session_factory = create_session_factory(engine)
            logger.info(f"Using SQL store at {settings.database_url}")
            return SQLConversationDatabase(session_factory), SQLMessageDatabase(session_factory)
        case _:
            raise ValueError(f"Unsupported store {store!r}. Choose 'memory' or 'sql'.")


async def build_controller(store: str, settings: ConversationTreeSettings) -> ConversationTreeController:
    conversation_db, message_db = await build_stores(store, settings)
    llm = OpenAILLM(
        models=settings.llm_models,
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        temperature=settings.llm_temperature,
    )
    logger.info(f"[Step 1] Controller ready (models={settings.llm_models}  budget={settings.token_budget})")
    return ConversationTreeController(
        conversation_db,
        message_db,
        llm,
        context_assembler=ContextAssembler(settings.token_budget, settings.attachment_token_estimate),
        flag_write_retries=settings.flag_write_retries,
        default_title=settings.default_title,
        memory_store=InMemoryMemoryStore(),
        memory_search_limit=settings.memory_search_limit,
    )


async def inspect_tree(controller: ConversationTreeController, conversation_id: str) -> ClientConversation:
    """Log the displayed thread and every branch of the conversation."""
    conversation = await controller.get_conversation_by_id(conversation_id, USER_ID)
    logger.info(f"--- {conversation.title!r}: {len(conversation.branches)} branch(es) ---")
    for branch in conversation.branches:
        marker = "*" if branch.is_active else " "
        logger.info(f" {marker} {branch.id}: {len(branch.message_ids)} messages")
    for message in conversation.messages:
        position = f"{message.sibling_ids.index(message.id) + 1}/{len(message.sibling_ids)}"  # type: ignore[arg-type]
        logger.info(f"  [{message.role} {position}] {(message.content or '')[:120]!r}")
    return conversation


async def step2_first_turn(controller: ConversationTreeController) -> str:
    conversation = await controller.create_conversation(USER_ID, title=QUESTION, system_prompt=SYSTEM_PROMPT)
    logger.info(f"[Step 2] Asking {QUESTION!r}")
    async for partial in controller.process_new_message_stream(
        MessageInput(content=QUESTION, conversation_id=conversation.id), USER_ID
    ):
        logger.debug(f"  ... {len(partial.content or '')} characters")
    await inspect_tree(controller, conversation.id)
    return conversation.id


async def step3_regenerate(controller: ConversationTreeController, conversation_id: str) -> None:
    answer = await controller.regenerate(conversation_id, USER_ID)
    logger.info(f"[Step 3] Regenerated answer {answer.id} ({len(answer.sibling_ids)} versions)")
    await inspect_tree(controller, conversation_id)


async def step4_switch_back(controller: ConversationTreeController, conversation_id: str) -> None:
    conversation = await controller.switch_path(conversation_id, USER_ID, path_id="path_0")
    logger.info("[Step 4] Switched back to path_0")
    await inspect_tree(controller, conversation.id)


async def step5_edit_and_regenerate(controller: ConversationTreeController, conversation_id: str) -> None:
    conversation = await controller.get_conversation_by_id(conversation_id, USER_ID)
    question = next(m for m in conversation.messages if m.role == "user")
    answer = await controller.edit_message(question.id, USER_ID, EDITED_QUESTION)  # type: ignore[arg-type]
    logger.info(f"[Step 5] Answer to the edited question: {(answer.content or '')[:200]!r}")
    await inspect_tree(controller, conversation_id)


async def run_demo(store: str = "memory") -> None:
    """Run the five steps against a fresh conversation."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    logger.info("======= Conversation tree demo: start =======")
    controller = await build_controller(store, settings)
    conversation_id = await step2_first_turn(controller)
    await step3_regenerate(controller, conversation_id)
    await step4_switch_back(controller, conversation_id)
    await step5_edit_and_regenerate(controller, conversation_id)
    logger.info("======= Conversation tree demo: done =======")


if __name__ == "__main__":
    asyncio.run(run_demo(store=os.environ.get("STORE", "memory")))
