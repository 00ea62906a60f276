"""Cross-cutting configuration: settings and log sinks."""
