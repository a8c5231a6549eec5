"""In-memory storage engine with optional snapshot files on disk."""