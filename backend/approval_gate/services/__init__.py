"""Domain services for the approval workflow."""
