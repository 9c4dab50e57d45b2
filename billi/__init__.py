"""Billi — a mixture-of-experts assistant for calendar and time-entry work.

Architecture Overview
=====================

Every inbound message goes through two stages:

1. **router** — ``MoERouter`` classifies the message (regex fast path first,
   a cheap Haiku call only when nothing matches) and picks an expert.

2. **expert** — an ``ExpertAgent`` built as a LangGraph state machine:

     model → (tool calls?) → tools → model      (while tool rounds remain)
                                   → answer → END (rounds used up)
           → (no tool calls?) → END

   The ``answer`` node re-calls the model with tool use disabled, so one
   request never loops forever on tool calls.

Experts
-------
- **appointments** — directory lookup, availability, meeting booking
- **billing** — employee/customer lookup and time-entry submission
- **unified** — catch-all with both toolsets

The first chunk of every streamed reply is a ``[CLASSIFICATION:{json}]``
marker that clients strip before display.

Package Structure
-----------------
- ``billi/config.py`` — Centralized configuration from environment variables
- ``billi/dates.py`` — Natural-language date/time resolution (business timezone)
- ``billi/classifier.py`` — Fast-path + LLM message classification
- ``billi/router.py`` — Expert selection and stream orchestration
- ``billi/agent.py`` — Tool-calling state machine shared by all experts
- ``billi/prompts.py`` — Per-expert system prompts
- ``billi/llm.py`` — Chat model builders
- ``billi/server.py`` — FastAPI application
- ``billi/main.py`` — CLI chat interface
- ``billi/services/`` — Cache, session store, directory and accounting clients
- ``billi/tools/`` — Tool definitions, typed results and dispatch
- ``billi/api/`` — FastAPI routes and Pydantic schemas
"""
