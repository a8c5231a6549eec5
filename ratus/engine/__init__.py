"""Storage engine interface, an in-memory engine and a stub engine for tests."""