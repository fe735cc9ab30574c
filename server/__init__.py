"""Engine wiring, scheduler and command line entry point."""
