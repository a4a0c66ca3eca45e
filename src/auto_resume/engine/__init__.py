"""Task queue and recovery engine for unattended AI coding CLI sessions.

Why not Celery / RQ / Huey?
~~~~~~~~~~~~~~~~~~~~~~~~~~~
Queuing is the easy part. The work here sits on the boundary between the queue
and an interactive CLI session that only speaks terminal text:

- Usage-limit detection from free-form output ("try again at 3pm") and
  cancellable, bounded waits computed from it.
- Step completion detected by markers, phase patterns or exit status, with a
  per-step timeout as the backstop.
- Severity classification of failures driving retry, checkpoint-and-hold or
  manual escalation, with a diagnostic report for humans.
- Checkpoints taken at every step boundary so a workflow resumes after a crash
  without re-sending completed commands.

A broker would add an operational dependency to a single-machine tool whose
queue is a locked JSON document. The claim -> execute -> checkpoint loop in
``worker.py`` and ``workflow.py`` is the right size for that.
"""
