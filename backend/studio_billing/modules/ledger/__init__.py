"""Local invoice and payment mirror."""
