"""External collaborator clients"""
