"""Stage state machine and the controller that drives the build pipeline."""
