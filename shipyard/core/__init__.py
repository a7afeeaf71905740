"""Pipeline core: orchestration, build, publish, render, rollout, and run history."""
