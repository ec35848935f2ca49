"""Pure domain layer for production runs: frozen DTOs and the step state machine."""
