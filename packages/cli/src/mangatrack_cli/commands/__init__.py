"""Sub-apps registered on the root ``mangatrack`` command."""
