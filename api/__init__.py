"""api/ -- FastAPI HTTP layer for AuthGate.

Layer rule: api/ is the outermost layer. It may import from every other
package; nothing imports from api/.
"""
