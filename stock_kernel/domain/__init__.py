"""Pure domain layer: clock, values, workflow definitions and DTOs."""
