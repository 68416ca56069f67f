# flake8: noqa
"""
Backend package for the personal notes and chat app.

Modules:
    settings: Configuration loading and persistence helpers.
    storage:  Flat-directory note store, line search, and bounded chat history.
    llm:      Upstream chat client, reply text extraction, and WRITE_NOTE directives.
    schemas:  Pydantic request bodies for the JSON API.
    client:   HTTP client mirroring the browser flow, including directive handling.
    main:     FastAPI application wiring everything together.
"""
