"""Cluster visualizer: settings, event hub and web server."""