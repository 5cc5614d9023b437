"""Rule triggering and safe execution engine for stablecoin transfers."""
