"""
Workers Package
════════════════

  state.py         JobState machine, StopSignal, ProgressTracker
  orchestrator.py  JobOrchestrator — one leased job, start to finish
  pool.py          WorkerPool — claim loop, heartbeats, bounded job slots
  runtime.py       PipelineRuntime — per-process component wiring
  celery_app.py    Celery app (dispatch + beat sweep)
  tasks.py         process_next_job, sweep_queue, health_check
"""
