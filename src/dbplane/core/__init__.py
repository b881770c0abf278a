"""Platform primitives shared by every dbplane machine."""
