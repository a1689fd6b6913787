"""Upload client services. Import from the submodules directly."""
