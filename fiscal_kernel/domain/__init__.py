"""Pure domain types: clock, timestamp tokens, request DTOs."""
