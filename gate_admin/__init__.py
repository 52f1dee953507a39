"""Administrative CLI for workflows and stored gate runs."""
