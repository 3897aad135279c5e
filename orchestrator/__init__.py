# flake8: noqa
"""
Offline-capable task list with a relay to a locally hosted language model.

Modules:
    settings: Configuration loading and persistence helpers.
    storage:  Durable local store for tasks, conversations, messages and the outbox.
    outbox:   Typed outbox actions, the drainer and the connectivity monitor.
    llm:      Completion service client, prompt construction and stream frame decoding.
    relay:    Producer/consumer bridge streaming upstream text to HTTP responses.
    client:   HTTP client for the relay endpoints.
    session:  Chat session manager and task board built on the local store.
    main:     FastAPI application wiring the relay and task endpoints.
"""
