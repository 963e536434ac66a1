"""agentbox - run an AI coding agent in an isolated container bound to a git repo.

Modules:
    - sessions: durable session records (JSON store, atomic writes)
    - recovery: reconcile stored sessions with live container/shadow state
    - attach: interactive terminal attachment to a container process
    - orchestrator: branch resolution, container start, commit reaction loop
    - runtime: docker-backed container runtime client
    - web: browser handoff (FastAPI + uvicorn)
"""

__version__ = "0.3.0"
