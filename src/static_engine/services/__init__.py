"""Generation services: validation, copy, images, storage, credits and orchestration."""
