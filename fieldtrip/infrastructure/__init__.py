"""fieldtrip Infrastructure - position, estimation and storage collaborators."""
