"""Services shared by the pipeline stages (cancellation, downloads, tooling)."""
