"""Relay Service package.

    models.py         — IntakeJob, JobRecord, JobState state machine
    results.py        — ResultStore Protocol, InMemoryResultStore, create_result_store()
    sqlite_results.py — SQLiteResultStore (aiosqlite)
    fetcher.py        — ArtifactFetcher (bounded download)
    workers.py        — RelayWorkerPool (bounded queue, workers, watchdog)
    intake.py         — POST /import, GET /jobs
    health.py         — GET /health
    middleware.py     — intake body size cap
    main.py           — create_app(), lifespan
    run.py            — uvicorn entry point
"""
