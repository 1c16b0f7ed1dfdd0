"""Change notifier: job path classifier, subscriber hub and directory watcher."""
