"""Task and batch coordination for multi-worker pipelines.

Why no scheduler process?
~~~~~~~~~~~~~~~~~~~~~~~~~
Workers may run anywhere, answer late or not at all, and any process may
crash between two steps. Progress is therefore driven by chained hand-offs:
a worker's completion notifies the task coordinator, which claims the next
hand-off with a conditional update on the task row and only then invokes.
The last task of a batch to finish flips the batch's aggregate guard and
runs the aggregate action. Nothing polls the queue.

A supervising loop would duplicate what the conditional updates already
guarantee, and would become the single component whose crash stalls every
task.
"""
