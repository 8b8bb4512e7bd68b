"""
Database Models

This package defines the database models for the starter service using SQLAlchemy ORM.
They back the optional database adapter used by the authentication layer; without a
configured database none of these tables are touched.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- user.py: Users, linked provider accounts and magic-link verification tokens
- health.py: Health monitoring gauge (in-memory, not persisted)

The data models follow these relationships:
- User: A person who signed in at least once
- Account: A provider identity (google, email) linked to a User
- VerificationToken: A hashed one-time token issued by the email provider

The models use SQLAlchemy's async interface for non-blocking database operations.
"""
