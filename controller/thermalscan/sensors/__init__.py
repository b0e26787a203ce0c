"""Camera and perception collaborators."""
