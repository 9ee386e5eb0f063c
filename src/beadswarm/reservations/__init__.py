"""File path reservations through the external broker."""
