"""HTTP API for codified extractions and the project data library."""
