import threading

from provisioner.metrics import RunMetrics


def test_counters_and_step_durations():
    metrics = RunMetrics()
    metrics.inc("instances_ready_total")
    metrics.inc("instances_ready_total", 2)
    metrics.observe("create", 0.25)
    metrics.observe("create", 0.5)
    snapshot = metrics.snapshot()
    assert snapshot["instances_ready_total"] == 3.0
    assert snapshot["step_create_seconds_total"] == 0.75


def test_increments_are_thread_safe():
    metrics = RunMetrics()

    def bump():
        for _ in range(1000):
            metrics.inc("backend_commands_total")

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert metrics.snapshot()["backend_commands_total"] == 8000.0
