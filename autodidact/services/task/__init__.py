"""Task execution pipeline.

- ``codec``          base64 transport and line accounting
- ``models``         task, plan and change data model
- ``overlay``        per-run copy-on-write file view
- ``commit_builder`` atomic blob/tree/commit/ref sequence
- ``conflicts``      ahead/behind detection
- ``contracts``      JSON boundary with the planner and synthesizer
- ``synthesis``      LLM-backed planner and synthesizer
- ``store``          task persistence seam
- ``context``        per-run state
- ``orchestrator``   the driver
"""
