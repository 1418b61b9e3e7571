"""Mystery Walk — location-based walking mystery quest generator."""
