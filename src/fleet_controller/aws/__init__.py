"""AWS client management and the EC2 compute provider."""
