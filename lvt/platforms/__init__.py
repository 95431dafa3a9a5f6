"""Local walker hosts, one module per UI toolkit."""
