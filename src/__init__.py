"""Clinic Assistant: a customer intake agent and a staff copilot.

Architecture Overview
=====================

Both assistants run each inbound message (a *turn*) through one
**LangGraph** state machine (``src/agent.py``)::

    receive → classify → select_tools → execute_tools → compose → deliver

- **classify** asks an ``IntentClassifier`` for an intent and a confidence.
  The default is a keyword/pattern classifier; Claude Haiku via
  ``langchain_anthropic`` is available with ``CLASSIFIER_BACKEND=anthropic``.
  Either way, a classifier failure degrades to a low-confidence fallback.
- **select_tools** is a deterministic rule table (``src/planning.py``).  The
  model never picks tools; it only labels intent.
- **execute_tools** sends every call through the ``ToolDispatcher``, which
  validates params, checks capabilities, and runs the handler under a
  timeout, in that order.
- **compose** decides the handoff (``src/policy.py``) and writes the reply
  (``src/responses.py``).

Key Design Decisions
--------------------
- **Permissions** are capability sets derived from the staff role; the
  customer agent has its own service identity.
- **Handoff** state only moves forward (none → requested → active).  Once a
  conversation is active, no more tools run for it.
- **Persistence**: the whole context is written through
  ``ConversationStore.save`` on receive and on deliver, under an optimistic
  version check.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development/testing).

Package Structure
-----------------
- ``src/agent.py`` — LangGraph turn graph and the ``Orchestrator``
- ``src/config.py`` — Centralized configuration from environment variables
- ``src/classifier.py`` / ``src/prompts.py`` — intent classification
- ``src/planning.py`` / ``src/policy.py`` / ``src/responses.py`` — turn rules
- ``src/server.py`` — FastAPI application
- ``src/main.py`` — CLI chat interface
- ``src/services/`` — clinic backend, conversation store, audit, metrics
- ``src/tools/`` — tool schemas, permissions, handlers, registry, dispatcher
- ``src/api/`` — FastAPI routes and Pydantic schemas
"""
