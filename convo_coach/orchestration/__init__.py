"""Turn orchestration: timers, transcript buffering, the conversation log and the controller."""
