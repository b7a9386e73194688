"""Platform integrations"""
