"""Release metadata lookup, caching and linking to the timeline."""
