"""Periodic scraping of HTTP endpoints and commands into compressed log lines.

Every scrape target runs on its own thread at a fixed interval. Outcomes are
funnelled through one channel into a single writer that emits one JSON line
per scrape, with zstd-compressed payloads.

Key modules:
    models      -- ScrapeTarget, HttpAction, CommandAction, ScrapeOutcome, LogRecord
    config      -- Duration parsing, JSON config loading, target validation
    runner      -- ActionRunner: one HTTP request or command under a deadline
    target_loop -- TargetLoop: per-target schedule and tick execution
    channel     -- ScrapeChannel: bounded many-to-one outcome queue
    scheduler   -- Scheduler: starts, triggers and stops target loops
    encoder     -- encode(): ScrapeOutcome -> LogRecord
    compression -- Self-contained zstd frames
    writer      -- CompressingWriter: frames records onto the output sink
    decode      -- read_records(): turn a log stream back into payloads
    lifecycle   -- DebugBunny: startup and graceful shutdown of the pipeline
    errors      -- Exception hierarchy
"""
