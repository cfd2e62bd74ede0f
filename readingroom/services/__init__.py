"""Domain services shared by the HTTP routes and maintenance scripts."""
