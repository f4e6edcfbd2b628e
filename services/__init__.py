"""Identity core: login, second factor, password lifecycle, registration."""
