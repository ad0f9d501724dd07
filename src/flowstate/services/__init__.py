"""Services built on top of the Flowstate storage layer."""
