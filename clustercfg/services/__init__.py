"""
Services

- locator/ - Coordinator, group resolution and the locator HTTP surface
- member/ - Member agent, locator client and the member HTTP surface
"""
