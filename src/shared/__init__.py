"""Store, search index, configuration and other pieces used by both packages."""
