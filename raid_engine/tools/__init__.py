"""Administrative command-line tools."""
