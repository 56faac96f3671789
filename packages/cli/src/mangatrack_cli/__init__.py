"""mangatrack operator CLI."""
