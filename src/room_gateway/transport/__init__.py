"""HTTP transport: application assembly, routes and JSON responses."""
