"""Task queue execution engine.

A queue is a persisted, append-only list of heterogeneous tasks (create,
move, tag.merge, ...) that are validated, verified against the live
DEVONthink instance, ordered by their explicit ``dependsOn`` edges and the
implicit edges carried by ``$<index>.<field>`` references, and finally
dispatched to an action executor under one of three policies:

- ``sequential``: one task at a time, failures poison only dependents.
- ``parallel``: waves of ready tasks on a bounded thread pool.
- ``transactional``: sequential, but the first failure halts the run and
  leaves the rest pending for a later resume.

There is no rollback: DEVONthink exposes no compensating actions, so a
halted transactional run keeps whatever side effects already happened.
"""
