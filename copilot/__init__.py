"""Real-time AI co-pilot for interviews, sales calls and meetings."""
