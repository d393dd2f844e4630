"""Container runtime access: naming, lifecycle, exec and images."""
