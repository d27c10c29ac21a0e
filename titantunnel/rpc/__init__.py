"""Request types, user and node management operations, and the API facade."""