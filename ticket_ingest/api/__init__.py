"""Web API"""
