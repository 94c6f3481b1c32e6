"""Server-side compute cache for the Lumo market dashboard."""
