"""Pure evaluation logic for telemetry, alerts, control validation and health."""
