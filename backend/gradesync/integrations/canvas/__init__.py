"""
Canvas LMS integration: REST/GraphQL client and the grade sync error taxonomy.
"""
