"""Pure policy, gate and preflight logic shared by the scheduler and the executor."""
